from __future__ import annotations

import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator

from aura_core.errors import (
    AlreadyClaimed,
    InvalidToken,
    NotClaimed,
    NotFound,
    RecoverableError,
    ValidationError,
)
from aura_core.fleet.tokens import generate_bootstrap_token, token_hash
from aura_core.fleet.types import DeviceRecord, RegisteredDevice
from aura_core.logging import get_logger

logger = get_logger(__name__)

ALL_FLEETS = "all"

_COLUMNS = (
    "id",
    "name",
    "fleet_tags",
    "created_at",
    "updated_at",
    "claimed_at",
    "provisioned_at",
    "deregistered_at",
    "firmware_id",
    "assigned_firmware_id",
    "assigned_release_id",
    "previous_firmware_id",
    "certificate_serial",
    "last_seen_at",
)
_SELECT = f"SELECT {', '.join(_COLUMNS)} FROM devices"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def normalize_tags(items: Iterable[object] | None) -> tuple[str, ...]:
    if not items:
        return ()
    deduped: list[str] = []
    for item in items:
        cleaned = str(item).strip().lower()
        if cleaned and cleaned not in deduped:
            deduped.append(cleaned)
    return tuple(deduped)


def normalize_fleet(tag: str | None) -> str:
    cleaned = (tag or "").strip().lower()
    return cleaned or ALL_FLEETS


class DeviceRegistry:
    """Device identity and the claim/provision lifecycle.

    Backed by sqlite so the claim and firmware-pointer writes are single
    compare-and-set statements inside ``BEGIN IMMEDIATE`` transactions; this
    holds across threads and across processes sharing the database file.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.path, timeout=30)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise RecoverableError(f"Device registry write failed: {exc}") from exc
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS devices (
                        id TEXT PRIMARY KEY,
                        name TEXT,
                        fleet_tags TEXT NOT NULL DEFAULT '[]',
                        token_hash TEXT UNIQUE,
                        consumed_token_hash TEXT,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        claimed_at TEXT,
                        provisioned_at TEXT,
                        deregistered_at TEXT,
                        firmware_id TEXT,
                        assigned_firmware_id TEXT,
                        assigned_release_id TEXT,
                        previous_firmware_id TEXT,
                        certificate_serial TEXT,
                        last_seen_at TEXT
                    )
                    """
                )
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_devices_consumed_token "
                    "ON devices(consumed_token_hash)"
                )
        finally:
            conn.close()

    def register(
        self,
        *,
        name: str | None = None,
        fleet_tags: Iterable[str] | None = None,
        firmware_id: str | None = None,
    ) -> RegisteredDevice:
        token = generate_bootstrap_token()
        device_id = str(uuid.uuid4())
        now = utc_now()
        tags = normalize_tags(fleet_tags)
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO devices (
                    id, name, fleet_tags, token_hash, created_at, updated_at,
                    firmware_id
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    device_id,
                    name,
                    json.dumps(list(tags)),
                    token_hash(token),
                    now,
                    now,
                    firmware_id,
                ),
            )
        logger.info("Device registered", extra={"device_id": device_id})
        return RegisteredDevice(device=self.get(device_id), bootstrap_token=token)

    def claim(self, token: str) -> DeviceRecord:
        if not token:
            raise InvalidToken("bootstrap token is required")
        hashed = token_hash(token)
        now = utc_now()
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT id FROM devices "
                "WHERE token_hash = ? AND claimed_at IS NULL "
                "AND deregistered_at IS NULL",
                (hashed,),
            ).fetchone()
            if row is None:
                consumed = conn.execute(
                    "SELECT id FROM devices WHERE consumed_token_hash = ?",
                    (hashed,),
                ).fetchone()
                if consumed is not None:
                    logger.warning(
                        "Bootstrap token replayed",
                        extra={
                            "device_id": consumed[0],
                            "error_code": AlreadyClaimed.code,
                        },
                    )
                    raise AlreadyClaimed("bootstrap token was already used")
                logger.warning(
                    "Claim with unknown bootstrap token",
                    extra={"error_code": InvalidToken.code},
                )
                raise InvalidToken("bootstrap token does not match any device")
            device_id = row[0]
            cursor = conn.execute(
                """
                UPDATE devices
                SET claimed_at = ?, updated_at = ?, token_hash = NULL,
                    consumed_token_hash = ?
                WHERE id = ? AND token_hash = ? AND claimed_at IS NULL
                """,
                (now, now, hashed, device_id, hashed),
            )
            if cursor.rowcount != 1:
                raise AlreadyClaimed("bootstrap token was already used")
        logger.info("Device claimed", extra={"device_id": device_id})
        return self.get(device_id)

    def mark_provisioned(
        self,
        device_id: str,
        *,
        certificate_serial: str | None = None,
    ) -> DeviceRecord:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT claimed_at, provisioned_at, deregistered_at "
                "FROM devices WHERE id = ?",
                (device_id,),
            ).fetchone()
            if row is None or row[2]:
                raise NotFound(f"device {device_id} not found")
            claimed_at, provisioned_at, _ = row
            if not claimed_at:
                raise NotClaimed(f"device {device_id} has not been claimed")
            if not provisioned_at:
                now = utc_now()
                stamp = max(now, claimed_at, key=_parse_ts)
                conn.execute(
                    """
                    UPDATE devices
                    SET provisioned_at = ?, updated_at = ?,
                        certificate_serial = COALESCE(?, certificate_serial)
                    WHERE id = ? AND provisioned_at IS NULL
                    """,
                    (stamp, now, certificate_serial, device_id),
                )
                logger.info("Device provisioned", extra={"device_id": device_id})
        return self.get(device_id)

    def deregister(self, device_id: str) -> DeviceRecord:
        now = utc_now()
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE devices
                SET deregistered_at = COALESCE(deregistered_at, ?),
                    token_hash = NULL, updated_at = ?
                WHERE id = ?
                """,
                (now, now, device_id),
            )
            if cursor.rowcount != 1:
                raise NotFound(f"device {device_id} not found")
        logger.info("Device deregistered", extra={"device_id": device_id})
        return self.get(device_id)

    def set_fleet_tags(self, device_id: str, tags: Iterable[str]) -> DeviceRecord:
        cleaned = normalize_tags(tags)
        if ALL_FLEETS in cleaned:
            raise ValidationError(f"'{ALL_FLEETS}' is reserved and cannot be a fleet tag")
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE devices SET fleet_tags = ?, updated_at = ? "
                "WHERE id = ? AND deregistered_at IS NULL",
                (json.dumps(list(cleaned)), utc_now(), device_id),
            )
            if cursor.rowcount != 1:
                raise NotFound(f"device {device_id} not found")
        return self.get(device_id)

    def get(self, device_id: str) -> DeviceRecord:
        conn = self._connect()
        try:
            row = conn.execute(f"{_SELECT} WHERE id = ?", (device_id,)).fetchone()
        finally:
            conn.close()
        if row is None:
            raise NotFound(f"device {device_id} not found")
        return _device_from_row(row)

    def list_devices(self, *, include_deregistered: bool = False) -> list[DeviceRecord]:
        query = _SELECT
        if not include_deregistered:
            query += " WHERE deregistered_at IS NULL"
        conn = self._connect()
        try:
            rows = conn.execute(f"{query} ORDER BY created_at DESC").fetchall()
        finally:
            conn.close()
        return [_device_from_row(row) for row in rows]

    def list_by_fleet(
        self,
        tag: str | None,
        *,
        provisioned_only: bool = True,
    ) -> set[str]:
        fleet = normalize_fleet(tag)
        matches: set[str] = set()
        for device in self.list_devices():
            if provisioned_only and device.provisioned_at is None:
                continue
            if fleet == ALL_FLEETS or fleet in device.fleet_tags:
                matches.add(device.id)
        return matches

    def assign_firmware(
        self,
        device_id: str,
        *,
        firmware_id: str,
        release_id: str,
    ) -> str | None:
        """Point a device at new firmware; returns the firmware it ran before."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT firmware_id, deregistered_at FROM devices WHERE id = ?",
                (device_id,),
            ).fetchone()
            if row is None or row[1]:
                raise NotFound(f"device {device_id} not found")
            previous = row[0]
            conn.execute(
                """
                UPDATE devices
                SET assigned_firmware_id = ?, assigned_release_id = ?,
                    previous_firmware_id = ?, updated_at = ?
                WHERE id = ?
                """,
                (firmware_id, release_id, previous, utc_now(), device_id),
            )
        return previous

    def revert_firmware(
        self,
        device_id: str,
        *,
        release_id: str,
        firmware_id: str | None,
    ) -> bool:
        """Reassign ``firmware_id`` unless a newer release took the device over."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE devices
                SET assigned_firmware_id = ?, assigned_release_id = NULL,
                    previous_firmware_id = NULL, updated_at = ?
                WHERE id = ? AND assigned_release_id = ?
                """,
                (firmware_id, utc_now(), device_id, release_id),
            )
            return cursor.rowcount == 1

    def record_installed(self, device_id: str, firmware_id: str) -> DeviceRecord:
        now = utc_now()
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE devices SET firmware_id = ?, last_seen_at = ?, updated_at = ? "
                "WHERE id = ? AND deregistered_at IS NULL",
                (firmware_id, now, now, device_id),
            )
            if cursor.rowcount != 1:
                raise NotFound(f"device {device_id} not found")
        return self.get(device_id)

    def touch(self, device_id: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE devices SET last_seen_at = ? WHERE id = ?",
                (utc_now(), device_id),
            )


def _parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _device_from_row(row: tuple) -> DeviceRecord:
    payload = dict(zip(_COLUMNS, row))
    try:
        tags = json.loads(payload.pop("fleet_tags") or "[]")
    except json.JSONDecodeError:
        tags = []
    return DeviceRecord(fleet_tags=normalize_tags(tags), **payload)
