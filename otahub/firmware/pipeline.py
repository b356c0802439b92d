"""Firmware verification pipeline.

Every build passes through the same gate before devices can see it::

    uploaded → staged → testing → verified → approved
                  ↘         ↘          ↘
                   rejected  rejected   rejected        approved → revoked

Stage:    static checks run against the stored artifact (the "simulated
          environment").  Any failed check rejects the build.
Testing:  the build is dispatched to the registered test targets of its
          hardware model as a ``verification`` rollout.  Every target must
          report success; a single failure rejects the build.
Approve:  an admin promotes a verified build.  Only approved builds are
          offered to devices or used for release rollouts.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from otahub.devices.registry import DeviceRegistry
from otahub.errors import InvalidStateError
from otahub.firmware.repository import FirmwareRepository
from otahub.versioning import is_newer

if TYPE_CHECKING:
    from otahub.rollout.dispatcher import RolloutDispatcher

logger = logging.getLogger(__name__)

MIN_TEST_TARGETS = int(os.environ.get("OTAHUB_MIN_TEST_TARGETS", "1"))


@dataclass
class CheckResult:
    name: str
    passed: bool
    detail: str = ""


class VerificationPipeline:
    """Drives firmware builds through staging, testing and approval."""

    def __init__(
        self,
        repository: FirmwareRepository,
        registry: DeviceRegistry,
        min_test_targets: int = MIN_TEST_TARGETS,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.min_test_targets = min_test_targets

    # ── Stage ──────────────────────────────────────────────────────

    def stage(self, firmware_id: str) -> dict:
        """Run static checks; move to ``staged`` or ``rejected``."""
        fw = self._expect(firmware_id, "uploaded")
        results = self.run_checks(fw)
        self._store_checks(firmware_id, results)

        failed = [r for r in results if not r.passed]
        if failed:
            notes = "; ".join(f"{r.name}: {r.detail}" for r in failed)
            logger.warning("Firmware %s rejected at staging: %s", firmware_id, notes)
            return self.repository.set_status(firmware_id, "rejected", notes=notes)

        logger.info("Firmware %s staged (%s %s)", firmware_id, fw["hardware_model"], fw["version"])
        return self.repository.set_status(firmware_id, "staged")

    def run_checks(self, fw: dict) -> list[CheckResult]:
        results: list[CheckResult] = []

        ok = self.repository.verify_artifact(fw["id"])
        results.append(CheckResult(
            "integrity", ok, "sha256 matches" if ok else "artifact hash mismatch or file missing",
        ))

        size = fw["size_bytes"]
        ok = 0 < size <= self.repository.max_bytes
        results.append(CheckResult("size", ok, f"{size} bytes"))

        latest = self.repository.latest_approved(fw["hardware_model"])
        if latest is None:
            results.append(CheckResult("version_order", True, "first build for model"))
        else:
            ok = is_newer(fw["version"], latest["version"])
            results.append(CheckResult(
                "version_order", ok,
                f"{fw['version']} vs approved {latest['version']}",
            ))

        _, known = self.registry.list_devices(hardware_model=fw["hardware_model"], limit=1)
        results.append(CheckResult(
            "model_known", known > 0,
            f"{known} device(s) of model {fw['hardware_model']}",
        ))
        return results

    def checks(self, firmware_id: str) -> list[dict]:
        self.repository.require(firmware_id)
        cur = self.repository.db.execute(
            "SELECT check_name, passed, detail, created_at FROM verification_checks "
            "WHERE firmware_id = ? ORDER BY id",
            (firmware_id,),
        )
        return [dict(r) for r in cur.fetchall()]

    # ── Testing ────────────────────────────────────────────────────

    def start_testing(
        self,
        firmware_id: str,
        dispatcher: RolloutDispatcher,
        created_by: int | None = None,
    ) -> dict:
        """Dispatch a staged build to all test targets of its model.

        Returns the verification rollout.
        """
        fw = self._expect(firmware_id, "staged")
        targets, count = self.registry.list_devices(
            hardware_model=fw["hardware_model"], test_targets=True,
        )
        if count < self.min_test_targets:
            raise InvalidStateError(
                f"Need {self.min_test_targets} test target(s) for {fw['hardware_model']}, "
                f"found {count}"
            )

        self.repository.set_status(firmware_id, "testing")
        try:
            rollout = dispatcher.create_rollout(
                firmware_id,
                created_by=created_by,
                device_ids=[d["id"] for d in targets],
                kind="verification",
                canary_percent=100,
                failure_threshold=1.0,
            )
        except Exception:
            self.repository.set_status(firmware_id, "staged")
            raise
        logger.info(
            "Firmware %s testing on %d target(s) via %s", firmware_id, count, rollout["id"],
        )
        return rollout

    def on_rollout_finished(self, rollout: dict, targets: list[dict]) -> None:
        """Dispatcher callback: settle a ``testing`` build from its results."""
        if rollout.get("kind") != "verification":
            return
        fw = self.repository.get(rollout["firmware_id"])
        if fw is None or fw["status"] != "testing":
            return

        failed = [t for t in targets if t["state"] != "succeeded"]
        if rollout["status"] == "completed" and targets and not failed:
            self.repository.set_status(fw["id"], "verified", notes=None)
            logger.info("Firmware %s verified on %d target(s)", fw["id"], len(targets))
            return

        notes = ", ".join(
            f"{t['device_id']}={t['state']}" + (f" ({t['detail']})" if t.get("detail") else "")
            for t in failed
        ) or f"verification rollout {rollout['status']}"
        self.repository.set_status(fw["id"], "rejected", notes=notes)
        logger.warning("Firmware %s failed verification: %s", fw["id"], notes)

    # ── Gate ───────────────────────────────────────────────────────

    def approve(self, firmware_id: str, admin_id: int) -> dict:
        self._expect(firmware_id, "verified")
        fw = self.repository.set_status(
            firmware_id, "approved",
            approved_by=admin_id,
            approved_at=datetime.now(timezone.utc).isoformat(),
        )
        logger.info("Firmware %s approved by user %s", firmware_id, admin_id)
        return fw

    def reject(
        self,
        firmware_id: str,
        reason: str = "",
        dispatcher: RolloutDispatcher | None = None,
    ) -> dict:
        self._expect(firmware_id, "uploaded", "staged", "testing", "verified")
        fw = self.repository.set_status(firmware_id, "rejected", notes=reason or "rejected")
        if dispatcher is not None:
            for rollout in dispatcher.list_rollouts(firmware_id=firmware_id, active_only=True):
                dispatcher.cancel(rollout["id"])
        logger.info("Firmware %s rejected: %s", firmware_id, reason or "(no reason)")
        return fw

    def revoke(
        self,
        firmware_id: str,
        reason: str = "",
        dispatcher: RolloutDispatcher | None = None,
    ) -> dict:
        """Withdraw an approved build and cancel its active rollouts."""
        self._expect(firmware_id, "approved")
        fw = self.repository.set_status(firmware_id, "revoked", notes=reason or "revoked")
        if dispatcher is not None:
            for rollout in dispatcher.list_rollouts(firmware_id=firmware_id, active_only=True):
                dispatcher.cancel(rollout["id"])
        logger.warning("Firmware %s revoked: %s", firmware_id, reason or "(no reason)")
        return fw

    # ── Internal ───────────────────────────────────────────────────

    def _expect(self, firmware_id: str, *states: str) -> dict:
        fw = self.repository.require(firmware_id)
        if fw["status"] not in states:
            raise InvalidStateError(
                f"Firmware {firmware_id} is {fw['status']}, expected {' or '.join(states)}"
            )
        return fw

    def _store_checks(self, firmware_id: str, results: list[CheckResult]) -> None:
        db = self.repository.db
        db.execute("DELETE FROM verification_checks WHERE firmware_id = ?", (firmware_id,))
        for r in results:
            db.execute(
                "INSERT INTO verification_checks (firmware_id, check_name, passed, detail) "
                "VALUES (?, ?, ?, ?)",
                (firmware_id, r.name, r.passed, r.detail),
            )
        db.commit()

