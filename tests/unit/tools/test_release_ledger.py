"""Tests for tools/release_ledger.py: ReleaseLedger."""

from __future__ import annotations

from schemas.definitions import TargetRole
from schemas.deployment import DeploymentRecord, StandbyRecord
from tools.release_ledger import ReleaseLedger


def _record(run: int, success: bool = True, target: str = "staging") -> DeploymentRecord:
    return DeploymentRecord(
        run_id=f"shop-{run}",
        artifact_id=f"shop-{run}",
        target=target,
        role=TargetRole.STAGING,
        host=f"{target}.internal",
        release_dir=f"/srv/releases/release-{run}",
        success=success,
    )


class TestReleaseLedger:
    def test_history_newest_first_and_persisted(self, tmp_path):
        path = tmp_path / "deployments.json"
        ledger = ReleaseLedger(path)
        ledger.record(_record(1))
        ledger.record(_record(2))

        reloaded = ReleaseLedger(path)
        assert [r.run_id for r in reloaded.get_history()] == ["shop-2", "shop-1"]
        assert len(reloaded.get_history(limit=1)) == 1

    def test_filter_by_target(self, tmp_path):
        ledger = ReleaseLedger(tmp_path / "deployments.json")
        ledger.record(_record(1, target="staging"))
        ledger.record(_record(1, target="web-b"))
        assert [r.target for r in ledger.get_history(target="web-b")] == ["web-b"]

    def test_current_and_previous_skip_failures(self, tmp_path):
        ledger = ReleaseLedger(tmp_path / "deployments.json")
        ledger.record(_record(1))
        ledger.record(_record(2))
        ledger.record(_record(3, success=False))

        assert ledger.current_release("staging") == "/srv/releases/release-2"
        assert ledger.previous_release("staging") == "/srv/releases/release-1"
        assert ledger.previous_release("web-b") is None

    def test_standby_record(self, tmp_path):
        ledger = ReleaseLedger(tmp_path / "deployments.json")
        assert ledger.standby() is None

        ledger.mark_standby(
            StandbyRecord(
                target="web-b",
                host="web-b.internal",
                release_dir="/srv/releases/release-42",
                artifact_id="shop-42",
                run_id="shop-42",
                approved_by="alice",
            )
        )

        assert (tmp_path / "standby.json").exists()
        standby = ReleaseLedger(tmp_path / "deployments.json").standby()
        assert standby.host == "web-b.internal"
        assert standby.approved_by == "alice"

    def test_unreadable_history_starts_empty(self, tmp_path):
        path = tmp_path / "deployments.json"
        path.write_text("{not json")
        assert ReleaseLedger(path).get_history() == []
