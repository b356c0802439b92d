"""Rollout dispatcher: delivers approved firmware to devices.

A rollout is a set of update transactions (one per target device) split into
waves: a canary wave (``canary_percent`` of the targets, at least one) and
the remainder.  A background loop calls :meth:`RolloutDispatcher.tick` which,
for every running rollout:

  1. Expires transactions past their deadline and schedules a retry with
     exponential backoff, or fails them once ``max_attempts`` is used up.
  2. Notifies pending targets of the current wave, keeping at most
     ``max_in_flight`` transactions outstanding.  Connected devices get an
     ``UPDATE_AVAILABLE`` push; the rest pick the offer up by polling.
  3. Once every target of the wave is terminal, halts the rollout if the
     failure ratio reached ``failure_threshold``, otherwise advances to the
     next wave or finishes.

Devices drive their transaction forward with :meth:`report`.
"""

from __future__ import annotations

import asyncio
import logging
import math
import os
import sqlite3
import time
import uuid
from datetime import datetime, timezone
from typing import Awaitable, Callable

from otahub.db import get_db
from otahub.devices.registry import DeviceRegistry
from otahub.errors import InvalidStateError, NotFoundError, ValidationError
from otahub.firmware.repository import FirmwareRepository
from otahub.versioning import is_newer, normalize_version

logger = logging.getLogger(__name__)

DISPATCH_INTERVAL = float(os.environ.get("OTAHUB_DISPATCH_INTERVAL", "5"))
UPDATE_TIMEOUT = float(os.environ.get("OTAHUB_UPDATE_TIMEOUT", "600"))
MAX_ATTEMPTS = int(os.environ.get("OTAHUB_MAX_ATTEMPTS", "3"))
RETRY_BASE = float(os.environ.get("OTAHUB_RETRY_BASE", "30"))
RETRY_CAP = 900.0

TERMINAL_STATES = ("succeeded", "failed", "rolled_back", "cancelled")
IN_FLIGHT_STATES = ("notified", "downloading", "installing")
REPORTABLE_STATES = ("downloading", "installing", "succeeded", "failed", "rolled_back")
ACTIVE_ROLLOUT_STATES = ("pending", "running", "paused")
ROLLOUT_KINDS = ("verification", "release", "manual")

Notifier = Callable[[str, dict], Awaitable[bool]]
FinishedCallback = Callable[[dict, list[dict]], None]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class RolloutDispatcher:
    """Creates rollouts and supervises every update transaction."""

    def __init__(
        self,
        repository: FirmwareRepository,
        registry: DeviceRegistry,
        notifier: Notifier | None = None,
        update_timeout: float = UPDATE_TIMEOUT,
        max_attempts: int = MAX_ATTEMPTS,
        retry_base: float = RETRY_BASE,
        interval: float = DISPATCH_INTERVAL,
        clock: Callable[[], float] = time.time,
        conn: sqlite3.Connection | None = None,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.notifier = notifier
        self.update_timeout = update_timeout
        self.max_attempts = max_attempts
        self.retry_base = retry_base
        self.interval = interval
        self._clock = clock
        self._conn = conn
        self._finished_callbacks: list[FinishedCallback] = []
        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def db(self) -> sqlite3.Connection:
        return self._conn if self._conn is not None else get_db()

    def on_finished(self, callback: FinishedCallback) -> None:
        """Register a callback for rollouts reaching a final state."""
        self._finished_callbacks.append(callback)

    # ── Lifecycle ──────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the background supervision loop."""
        if self._running:
            logger.warning("Rollout dispatcher is already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Rollout dispatcher started (interval=%.1fs)", self.interval)

    async def stop(self) -> None:
        """Stop the background supervision loop."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Rollout dispatcher stopped")

    @property
    def running(self) -> bool:
        return self._running

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.tick()
            except Exception:
                logger.exception("Rollout supervision pass failed")
            await asyncio.sleep(self.interval)

    # ── Creation ───────────────────────────────────────────────────

    def create_rollout(
        self,
        firmware_id: str,
        created_by: int | None = None,
        device_ids: list[str] | None = None,
        kind: str = "release",
        canary_percent: float = 10.0,
        max_in_flight: int = 10,
        failure_threshold: float = 0.2,
        allow_downgrade: bool = False,
    ) -> dict:
        """Create a running rollout of *firmware_id* and return it."""
        if kind not in ROLLOUT_KINDS:
            raise ValidationError(f"Unknown rollout kind: {kind}")
        if not 0 < canary_percent <= 100:
            raise ValidationError("canary_percent must be in (0, 100]")
        if max_in_flight < 1:
            raise ValidationError("max_in_flight must be at least 1")
        if not 0 <= failure_threshold <= 1:
            raise ValidationError("failure_threshold must be in [0, 1]")

        fw = self.repository.require(firmware_id)
        required = "testing" if kind == "verification" else "approved"
        if fw["status"] != required:
            raise InvalidStateError(
                f"Firmware {firmware_id} is {fw['status']}; {kind} rollouts need {required}"
            )

        targets = self._select_targets(fw, device_ids, kind, allow_downgrade)
        if not targets:
            raise ValidationError("No eligible devices for this rollout")

        targets.sort()
        canary = min(len(targets), max(1, math.ceil(canary_percent / 100.0 * len(targets))))
        wave_count = 1 if canary == len(targets) else 2

        rollout_id = f"ro-{uuid.uuid4().hex[:12]}"
        db = self.db
        db.execute(
            """INSERT INTO rollouts
               (id, firmware_id, kind, status, canary_percent, max_in_flight,
                failure_threshold, allow_downgrade, wave_count, created_by)
               VALUES (?, ?, ?, 'running', ?, ?, ?, ?, ?, ?)""",
            (rollout_id, firmware_id, kind, canary_percent, max_in_flight,
             failure_threshold, allow_downgrade, wave_count, created_by),
        )
        for i, device_id in enumerate(targets):
            db.execute(
                "INSERT INTO rollout_targets (rollout_id, device_id, wave) VALUES (?, ?, ?)",
                (rollout_id, device_id, 0 if i < canary else 1),
            )
        db.commit()

        logger.info(
            "Rollout %s created: %s %s to %d device(s), canary=%d, kind=%s",
            rollout_id, fw["hardware_model"], fw["version"], len(targets), canary, kind,
        )
        return self.get_rollout(rollout_id)

    def _select_targets(
        self,
        fw: dict,
        device_ids: list[str] | None,
        kind: str,
        allow_downgrade: bool,
    ) -> list[str]:
        if device_ids is not None:
            devices = []
            for device_id in dict.fromkeys(device_ids):
                device = self.registry.require(device_id)
                if device["hardware_model"] != fw["hardware_model"]:
                    raise ValidationError(
                        f"Device {device_id} is {device['hardware_model']}, "
                        f"firmware targets {fw['hardware_model']}"
                    )
                devices.append(device)
        else:
            devices, _ = self.registry.list_devices(
                hardware_model=fw["hardware_model"], test_targets=False,
            )

        if kind != "verification" and not allow_downgrade:
            devices = [d for d in devices if is_newer(fw["version"], d["firmware_version"])]

        busy = self._busy_devices()
        selected = []
        for d in devices:
            if d["id"] in busy:
                logger.info("Skipping %s: update already in progress", d["id"])
                continue
            selected.append(d["id"])
        return selected

    def _busy_devices(self) -> set[str]:
        placeholders = ", ".join("?" for _ in ACTIVE_ROLLOUT_STATES)
        terminal = ", ".join("?" for _ in TERMINAL_STATES)
        cur = self.db.execute(
            f"""SELECT t.device_id FROM rollout_targets t
                JOIN rollouts r ON r.id = t.rollout_id
                WHERE r.status IN ({placeholders}) AND t.state NOT IN ({terminal})""",
            ACTIVE_ROLLOUT_STATES + TERMINAL_STATES,
        )
        return {r[0] for r in cur.fetchall()}

    async def trigger_device_update(
        self,
        device_id: str,
        firmware_id: str | None = None,
        allow_downgrade: bool = False,
        created_by: int | None = None,
    ) -> dict:
        """Manual trigger: roll one device to *firmware_id* (default: latest approved)."""
        device = self.registry.require(device_id)
        if firmware_id is None:
            fw = self.repository.latest_approved(device["hardware_model"])
            if fw is None:
                raise NotFoundError(f"No approved firmware for {device['hardware_model']}")
        else:
            fw = self.repository.require(firmware_id)

        if not allow_downgrade and not is_newer(fw["version"], device["firmware_version"]):
            raise ValidationError(
                f"Device already runs {device['firmware_version']} (>= {fw['version']})"
            )

        rollout = self.create_rollout(
            fw["id"],
            created_by=created_by,
            device_ids=[device_id],
            kind="manual",
            canary_percent=100,
            max_in_flight=1,
            failure_threshold=1.0,
            allow_downgrade=allow_downgrade,
        )
        await self._supervise(rollout, self._clock())
        return self.get_rollout(rollout["id"])

    # ── Queries ────────────────────────────────────────────────────

    def get_rollout(self, rollout_id: str) -> dict | None:
        row = self.db.execute("SELECT * FROM rollouts WHERE id = ?", (rollout_id,)).fetchone()
        if row is None:
            return None
        rollout = dict(row)
        rollout["counts"] = self._counts(rollout_id)
        return rollout

    def require_rollout(self, rollout_id: str) -> dict:
        rollout = self.get_rollout(rollout_id)
        if rollout is None:
            raise NotFoundError(f"Rollout not found: {rollout_id}")
        return rollout

    def list_rollouts(
        self,
        firmware_id: str | None = None,
        status: str | None = None,
        active_only: bool = False,
    ) -> list[dict]:
        where, params = [], []
        if firmware_id:
            where.append("firmware_id = ?")
            params.append(firmware_id)
        if active_only:
            where.append(f"status IN ({', '.join('?' for _ in ACTIVE_ROLLOUT_STATES)})")
            params.extend(ACTIVE_ROLLOUT_STATES)
        elif status:
            where.append("status = ?")
            params.append(status)
        where_sql = " AND ".join(where) if where else "1=1"
        cur = self.db.execute(
            f"SELECT id FROM rollouts WHERE {where_sql} ORDER BY created_at DESC, id", params
        )
        return [self.get_rollout(r["id"]) for r in cur.fetchall()]

    def targets(self, rollout_id: str, wave: int | None = None) -> list[dict]:
        query = "SELECT * FROM rollout_targets WHERE rollout_id = ?"
        params: list = [rollout_id]
        if wave is not None:
            query += " AND wave = ?"
            params.append(wave)
        cur = self.db.execute(query + " ORDER BY wave, device_id", params)
        return [dict(r) for r in cur.fetchall()]

    def _counts(self, rollout_id: str) -> dict[str, int]:
        cur = self.db.execute(
            "SELECT state, COUNT(*) AS n FROM rollout_targets WHERE rollout_id = ? GROUP BY state",
            (rollout_id,),
        )
        return {r["state"]: r["n"] for r in cur.fetchall()}

    # ── Offers ─────────────────────────────────────────────────────

    def build_offer(self, rollout: dict, fw: dict) -> dict:
        return {
            "type": "UPDATE_AVAILABLE",
            "rollout_id": rollout["id"],
            "firmware_id": fw["id"],
            "version": fw["version"],
            "sha256": fw["sha256"],
            "size_bytes": fw["size_bytes"],
            "url": f"/device-api/firmware/{fw['id']}",
            "allow_downgrade": bool(rollout.get("allow_downgrade")),
        }

    def pending_offer(self, device_id: str) -> dict | None:
        """The released transaction a polling device should act on, if any."""
        in_flight = ", ".join("?" for _ in IN_FLIGHT_STATES)
        row = self.db.execute(
            f"""SELECT r.* FROM rollout_targets t
                JOIN rollouts r ON r.id = t.rollout_id
                WHERE t.device_id = ? AND r.status = 'running' AND t.state IN ({in_flight})
                ORDER BY r.created_at DESC LIMIT 1""",
            (device_id,) + IN_FLIGHT_STATES,
        ).fetchone()
        if row is None:
            return None
        rollout = dict(row)
        fw = self.repository.require(rollout["firmware_id"])
        return self.build_offer(rollout, fw)

    def is_targeted(self, device_id: str, firmware_id: str) -> bool:
        row = self.db.execute(
            """SELECT 1 FROM rollout_targets t JOIN rollouts r ON r.id = t.rollout_id
               WHERE t.device_id = ? AND r.firmware_id = ? LIMIT 1""",
            (device_id, firmware_id),
        ).fetchone()
        return row is not None

    # ── Supervision ────────────────────────────────────────────────

    async def tick(self, now: float | None = None) -> None:
        """Run one supervision pass over every running rollout."""
        now = self._clock() if now is None else now
        cur = self.db.execute(
            "SELECT * FROM rollouts WHERE status = 'running' ORDER BY created_at, id"
        )
        for row in cur.fetchall():
            try:
                await self._supervise(dict(row), now)
            except Exception:
                logger.exception("Supervision failed for rollout %s", row["id"])

    async def _supervise(self, rollout: dict, now: float) -> None:
        rollout_id = rollout["id"]
        self._expire(rollout_id, now)

        wave = rollout["current_wave"]
        in_flight_sql = ", ".join("?" for _ in IN_FLIGHT_STATES)
        outstanding = self.db.execute(
            f"SELECT COUNT(*) FROM rollout_targets WHERE rollout_id = ? AND state IN ({in_flight_sql})",
            (rollout_id,) + IN_FLIGHT_STATES,
        ).fetchone()[0]
        slots = max(0, rollout["max_in_flight"] - outstanding)

        if slots:
            ready = self.db.execute(
                """SELECT device_id FROM rollout_targets
                   WHERE rollout_id = ? AND wave = ? AND state = 'pending' AND next_attempt_at <= ?
                   ORDER BY device_id LIMIT ?""",
                (rollout_id, wave, now, slots),
            ).fetchall()
            if ready:
                fw = self.repository.require(rollout["firmware_id"])
                offer = self.build_offer(rollout, fw)
                for r in ready:
                    await self._notify(rollout_id, r["device_id"], offer, now)

        self._evaluate_wave(rollout_id, now)

    def _expire(self, rollout_id: str, now: float) -> None:
        in_flight_sql = ", ".join("?" for _ in IN_FLIGHT_STATES)
        expired = self.db.execute(
            f"""SELECT device_id, attempts FROM rollout_targets
                WHERE rollout_id = ? AND state IN ({in_flight_sql}) AND deadline_at < ?""",
            (rollout_id,) + IN_FLIGHT_STATES + (now,),
        ).fetchall()
        for r in expired:
            attempts = r["attempts"]
            if attempts < self.max_attempts:
                delay = self.backoff(attempts)
                self._set_target(
                    rollout_id, r["device_id"],
                    state="pending", next_attempt_at=now + delay, deadline_at=None,
                    detail=f"timed out (attempt {attempts}), retry in {delay:.0f}s",
                )
                logger.info(
                    "Update of %s timed out (attempt %d/%d), retrying in %.0fs",
                    r["device_id"], attempts, self.max_attempts, delay,
                )
            else:
                self._set_target(
                    rollout_id, r["device_id"],
                    state="failed", deadline_at=None,
                    detail=f"timed out after {attempts} attempt(s)",
                )
                self.registry.log_event(r["device_id"], "update_failed", f"{rollout_id}: timeout")
                logger.warning("Update of %s failed: no response after %d attempts",
                               r["device_id"], attempts)

    def backoff(self, attempts: int) -> float:
        """Delay before retry number *attempts* + 1."""
        return min(self.retry_base * (2 ** max(0, attempts - 1)), RETRY_CAP)

    async def _notify(self, rollout_id: str, device_id: str, offer: dict, now: float) -> None:
        self.db.execute(
            """UPDATE rollout_targets SET state = 'notified', attempts = attempts + 1,
               deadline_at = ?, updated_at = ? WHERE rollout_id = ? AND device_id = ?""",
            (now + self.update_timeout, _now_iso(), rollout_id, device_id),
        )
        self.db.commit()

        pushed = False
        if self.notifier is not None:
            try:
                pushed = await self.notifier(device_id, offer)
            except Exception:
                logger.exception("Push notification to %s failed", device_id)
        detail = "pushed" if pushed else "awaiting poll"
        self._set_target(rollout_id, device_id, detail=detail)
        logger.debug("Offered %s to %s (%s)", offer["version"], device_id, detail)

    def _evaluate_wave(self, rollout_id: str, now: float) -> None:
        rollout = self.require_rollout(rollout_id)
        if rollout["status"] != "running":
            return
        wave = rollout["current_wave"]
        targets = self.targets(rollout_id, wave=wave)
        if any(t["state"] not in TERMINAL_STATES for t in targets):
            return

        failed = sum(1 for t in targets if t["state"] in ("failed", "rolled_back"))
        ratio = failed / len(targets) if targets else 0.0
        if failed and ratio >= rollout["failure_threshold"]:
            logger.warning(
                "Rollout %s halted: wave %d failure ratio %.2f >= %.2f",
                rollout_id, wave, ratio, rollout["failure_threshold"],
            )
            self._finish(rollout_id, "halted")
            return

        if wave + 1 < rollout["wave_count"]:
            self.db.execute(
                "UPDATE rollouts SET current_wave = ? WHERE id = ?", (wave + 1, rollout_id)
            )
            self.db.commit()
            logger.info("Rollout %s advancing to wave %d", rollout_id, wave + 1)
            return

        self._conclude(rollout_id)

    def _conclude(self, rollout_id: str) -> None:
        succeeded = any(t["state"] == "succeeded" for t in self.targets(rollout_id))
        self._finish(rollout_id, "completed" if succeeded else "failed")

    def _finish(self, rollout_id: str, status: str) -> None:
        self.db.execute(
            "UPDATE rollouts SET status = ?, finished_at = ? WHERE id = ?",
            (status, _now_iso(), rollout_id),
        )
        self.db.commit()
        rollout = self.require_rollout(rollout_id)
        logger.info("Rollout %s %s: %s", rollout_id, status, rollout["counts"])
        targets = self.targets(rollout_id)
        for cb in self._finished_callbacks:
            try:
                cb(rollout, targets)
            except Exception:
                logger.exception("Error in rollout finished callback")

    # ── Device reports ─────────────────────────────────────────────

    def report(
        self,
        device_id: str,
        rollout_id: str | None,
        state: str,
        detail: str = "",
        version: str | None = None,
    ) -> dict | None:
        """Apply a device's progress report.  Returns the updated target or None."""
        if state not in REPORTABLE_STATES:
            raise ValidationError(f"Unknown update state: {state}")

        target = self._find_target(device_id, rollout_id)
        if target is None:
            logger.info("Ignoring %s report from %s: no open transaction (%s)",
                        state, device_id, rollout_id)
            return None
        rollout_id = target["rollout_id"]
        rollout = self.require_rollout(rollout_id)
        if rollout["status"] not in ("running", "paused"):
            logger.info("Ignoring %s report from %s: rollout %s is %s",
                        state, device_id, rollout_id, rollout["status"])
            return None

        now = self._clock()
        if state in ("downloading", "installing"):
            self._set_target(rollout_id, device_id, state=state, detail=detail,
                             deadline_at=now + self.update_timeout)
            self.registry.set_status(device_id, "updating")
        elif state == "succeeded":
            fw = self.repository.require(rollout["firmware_id"])
            installed = normalize_version(version) if version else fw["version"]
            self._set_target(rollout_id, device_id, state=state, detail=detail, deadline_at=None)
            self.registry.set_firmware_version(device_id, installed)
            self.registry.set_status(device_id, "online")
            logger.info("Device %s updated to %s (%s)", device_id, installed, rollout_id)
        else:
            self._set_target(rollout_id, device_id, state=state, detail=detail, deadline_at=None)
            self.registry.set_status(device_id, "online")
            self.registry.log_event(device_id, f"update_{state}", f"{rollout_id}: {detail}")
            logger.warning("Device %s update %s (%s): %s", device_id, state, rollout_id, detail)

        if state in TERMINAL_STATES:
            self._evaluate_wave(rollout_id, now)
        return self._target(rollout_id, device_id)

    def _find_target(self, device_id: str, rollout_id: str | None) -> dict | None:
        terminal = ", ".join("?" for _ in TERMINAL_STATES)
        if rollout_id:
            row = self.db.execute(
                f"""SELECT * FROM rollout_targets
                    WHERE rollout_id = ? AND device_id = ? AND state NOT IN ({terminal})""",
                (rollout_id, device_id) + TERMINAL_STATES,
            ).fetchone()
        else:
            row = self.db.execute(
                f"""SELECT t.* FROM rollout_targets t JOIN rollouts r ON r.id = t.rollout_id
                    WHERE t.device_id = ? AND t.state NOT IN ({terminal})
                    ORDER BY r.created_at DESC LIMIT 1""",
                (device_id,) + TERMINAL_STATES,
            ).fetchone()
        return dict(row) if row else None

    def _target(self, rollout_id: str, device_id: str) -> dict | None:
        row = self.db.execute(
            "SELECT * FROM rollout_targets WHERE rollout_id = ? AND device_id = ?",
            (rollout_id, device_id),
        ).fetchone()
        return dict(row) if row else None

    def _set_target(self, rollout_id: str, device_id: str, **fields) -> None:
        fields["updated_at"] = _now_iso()
        sets = ", ".join(f"{k} = ?" for k in fields)
        self.db.execute(
            f"UPDATE rollout_targets SET {sets} WHERE rollout_id = ? AND device_id = ?",
            list(fields.values()) + [rollout_id, device_id],
        )
        self.db.commit()

    # ── Operator controls ──────────────────────────────────────────

    def pause(self, rollout_id: str) -> dict:
        rollout = self.require_rollout(rollout_id)
        if rollout["status"] != "running":
            raise InvalidStateError(f"Rollout {rollout_id} is {rollout['status']}")
        self._set_status(rollout_id, "paused")
        return self.require_rollout(rollout_id)

    def resume(self, rollout_id: str) -> dict:
        """Resume a paused rollout, or override a halt."""
        rollout = self.require_rollout(rollout_id)
        if rollout["status"] not in ("paused", "halted"):
            raise InvalidStateError(f"Rollout {rollout_id} is {rollout['status']}")
        if rollout["status"] == "halted":
            if rollout["current_wave"] + 1 >= rollout["wave_count"]:
                # halted on the last wave: nothing left to send
                self._conclude(rollout_id)
                return self.require_rollout(rollout_id)
            self.db.execute(
                "UPDATE rollouts SET finished_at = NULL, current_wave = current_wave + 1 "
                "WHERE id = ?",
                (rollout_id,),
            )
        self._set_status(rollout_id, "running")
        return self.require_rollout(rollout_id)

    def cancel(self, rollout_id: str) -> dict:
        rollout = self.require_rollout(rollout_id)
        if rollout["status"] in ("completed", "failed", "cancelled"):
            raise InvalidStateError(f"Rollout {rollout_id} is {rollout['status']}")
        terminal = ", ".join("?" for _ in TERMINAL_STATES)
        self.db.execute(
            f"""UPDATE rollout_targets SET state = 'cancelled', deadline_at = NULL, updated_at = ?
                WHERE rollout_id = ? AND state NOT IN ({terminal})""",
            (_now_iso(), rollout_id) + TERMINAL_STATES,
        )
        self.db.commit()
        self._finish(rollout_id, "cancelled")
        return self.require_rollout(rollout_id)

    def _set_status(self, rollout_id: str, status: str) -> None:
        self.db.execute("UPDATE rollouts SET status = ? WHERE id = ?", (status, rollout_id))
        self.db.commit()
        logger.info("Rollout %s → %s", rollout_id, status)
