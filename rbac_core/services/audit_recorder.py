"""
Audit trail recording, retrieval and export.

Recording is fire-and-forget: a failure to write an entry is logged and never
reaches the operation that triggered it.

Invariants:
- Entries are immutable and append-only
- Timestamps from one recorder are strictly increasing
- CSV and JSON exports carry the same logical fields as the in-memory list
"""
import csv
import io
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from loguru import logger

from rbac_core.models.domain import Actor, AuditLogEntry, FieldChange, Role, User
from rbac_core.models.enums import AuditAction, AuditEventKind, EntityType
from rbac_core.models.result import ErrorCode, Result
from rbac_core.repositories.base import AuditStore

CSV_HEADER = ["Timestamp", "Username", "Action", "Entity Type", "Entity Name", "Reason"]

# Domain event -> (action kind, entity type) on the stored entry
EVENT_MAPPING: Dict[AuditEventKind, Tuple[AuditAction, EntityType]] = {
    AuditEventKind.ROLE_CREATED: (AuditAction.CREATE, EntityType.ROLE),
    AuditEventKind.ROLE_UPDATED: (AuditAction.UPDATE, EntityType.ROLE),
    AuditEventKind.ROLE_DELETED: (AuditAction.DELETE, EntityType.ROLE),
    AuditEventKind.USER_CREATED: (AuditAction.CREATE, EntityType.USER),
    AuditEventKind.USER_UPDATED: (AuditAction.UPDATE, EntityType.USER),
    AuditEventKind.USER_DELETED: (AuditAction.DELETE, EntityType.USER),
    AuditEventKind.USER_ROLE_CHANGED: (AuditAction.ROLE_CHANGE, EntityType.USER),
    AuditEventKind.LOGIN: (AuditAction.LOGIN, EntityType.SESSION),
    AuditEventKind.LOGOUT: (AuditAction.LOGOUT, EntityType.SESSION),
}

_MICROSECOND = timedelta(microseconds=1)


@dataclass(frozen=True)
class AuditEvent:
    """A security-relevant domain event, before it becomes an entry."""
    kind: AuditEventKind
    actor: Actor
    entity_id: str
    entity_name: str
    changes: Sequence[FieldChange] = field(default_factory=tuple)
    reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Naive bounds are read as UTC so they compare with stored timestamps
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class MonotonicClock:
    """
    Wraps a clock so successive readings strictly increase.

    A reading that is not later than the previous one is bumped by a
    microsecond. Share one instance between recorders that write to the same
    trail.
    """

    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self.clock = clock
        self._last: Optional[datetime] = None

    def __call__(self) -> datetime:
        now = self.clock()
        if self._last is not None and now <= self._last:
            now = self._last + _MICROSECOND
        self._last = now
        return now


class AuditRecorder:
    def __init__(self, store: AuditStore, clock: Callable[[], datetime] = _utcnow):
        self.store = store
        self.clock = clock if isinstance(clock, MonotonicClock) else MonotonicClock(clock)

    def record(self, event: AuditEvent) -> Optional[AuditLogEntry]:
        """
        Turn an event into a stored entry.

        Returns the entry, or None if it could not be written. Never raises.
        """
        try:
            action, entity_type = EVENT_MAPPING[event.kind]
            entry = AuditLogEntry(
                id=f"audit_{uuid.uuid4().hex}",
                timestamp=self.clock(),
                user_id=event.actor.user_id,
                username=event.actor.username,
                action=action,
                entity_type=entity_type,
                entity_id=event.entity_id,
                entity_name=event.entity_name,
                changes=tuple(event.changes),
                reason=event.reason,
                ip_address=event.ip_address,
                user_agent=event.user_agent,
            )
            result = self.store.append(entry)
        except Exception:
            logger.exception(f"Failed to record audit event {event.kind.value} for {event.entity_name}")
            return None

        if not result.success:
            logger.error(
                f"Failed to record audit event {event.kind.value} for {event.entity_name}: "
                f"{result.error_code} {result.error.message}"
            )
            return None
        logger.debug(f"Audit {entry.action.value} {entry.entity_type.value} '{entry.entity_name}' by {entry.username}")
        return entry

    # Convenience recorders, one per domain event

    def role_created(self, actor: Actor, role: Role, reason: Optional[str] = None) -> Optional[AuditLogEntry]:
        return self.record(AuditEvent(
            AuditEventKind.ROLE_CREATED, actor, role.id, role.name,
            changes=(FieldChange("permissions", None, list(role.permission_keys)),),
            reason=reason,
        ))

    def role_updated(
        self,
        actor: Actor,
        role: Role,
        changes: Iterable[FieldChange],
        reason: Optional[str] = None,
    ) -> Optional[AuditLogEntry]:
        return self.record(AuditEvent(AuditEventKind.ROLE_UPDATED, actor, role.id, role.name, tuple(changes), reason))

    def role_deleted(self, actor: Actor, role: Role, reason: Optional[str] = None) -> Optional[AuditLogEntry]:
        return self.record(AuditEvent(AuditEventKind.ROLE_DELETED, actor, role.id, role.name, reason=reason))

    def user_created(self, actor: Actor, user: User, role_name: str) -> Optional[AuditLogEntry]:
        return self.record(AuditEvent(
            AuditEventKind.USER_CREATED, actor, user.id, user.username,
            changes=(FieldChange("role", None, role_name),),
        ))

    def user_updated(self, actor: Actor, user: User, changes: Iterable[FieldChange]) -> Optional[AuditLogEntry]:
        return self.record(AuditEvent(AuditEventKind.USER_UPDATED, actor, user.id, user.username, tuple(changes)))

    def user_deleted(self, actor: Actor, user: User) -> Optional[AuditLogEntry]:
        return self.record(AuditEvent(AuditEventKind.USER_DELETED, actor, user.id, user.username))

    def user_role_changed(
        self,
        actor: Actor,
        user: User,
        old_role_name: str,
        new_role_name: str,
        reason: Optional[str] = None,
    ) -> Optional[AuditLogEntry]:
        return self.record(AuditEvent(
            AuditEventKind.USER_ROLE_CHANGED, actor, user.id, user.username,
            changes=(FieldChange("role", old_role_name, new_role_name),),
            reason=reason,
        ))

    def login(
        self,
        user: User,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[AuditLogEntry]:
        actor = Actor(user.id, user.username)
        return self.record(AuditEvent(
            AuditEventKind.LOGIN, actor, user.id, user.username,
            ip_address=ip_address, user_agent=user_agent,
        ))

    def logout(self, user: User) -> Optional[AuditLogEntry]:
        return self.record(AuditEvent(AuditEventKind.LOGOUT, Actor(user.id, user.username), user.id, user.username))

    # Retrieval

    def query(
        self,
        user_id: Optional[str] = None,
        action: Optional[Union[AuditAction, str]] = None,
        entity_type: Optional[Union[EntityType, str]] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        newest_first: bool = False,
    ) -> Result[List[AuditLogEntry]]:
        """
        Entries matching every given filter; unset filters match everything.

        The time range is inclusive on both ends.
        """
        listed = self.store.list()
        if not listed.success:
            return Result.from_error(listed.error)

        action = AuditAction(action) if action is not None else None
        start, end = _as_utc(start), _as_utc(end)
        entity_type = EntityType(entity_type) if entity_type is not None else None

        def matches(entry: AuditLogEntry) -> bool:
            return (
                (user_id is None or entry.user_id == user_id)
                and (action is None or entry.action == action)
                and (entity_type is None or entry.entity_type == entity_type)
                and (start is None or entry.timestamp >= start)
                and (end is None or entry.timestamp <= end)
            )

        entries = sorted((e for e in listed.data if matches(e)), key=lambda e: e.timestamp, reverse=newest_first)
        return Result.ok(entries)

    # Export / import

    @staticmethod
    def export_csv(entries: Iterable[AuditLogEntry]) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
        # Header unquoted, values quoted
        buffer.write(",".join(CSV_HEADER) + "\n")
        for entry in entries:
            writer.writerow([
                entry.timestamp.isoformat(),
                entry.username,
                entry.action.value,
                entry.entity_type.value,
                entry.entity_name,
                entry.reason or "",
            ])
        return buffer.getvalue()

    @staticmethod
    def export_json(entries: Iterable[AuditLogEntry]) -> str:
        return json.dumps([e.to_dict() for e in entries], indent=2)

    @staticmethod
    def import_csv(content: str) -> Result[List[AuditLogEntry]]:
        """
        Parse a CSV export back into entries.

        CSV carries only the tabular fields, so ids are regenerated and the
        actor id, entity id and changes come back empty.
        """
        try:
            reader = csv.DictReader(io.StringIO(content))
            if reader.fieldnames != CSV_HEADER:
                return Result.fail(ErrorCode.AUDIT_LOG_ERROR, f"Unexpected CSV header: {reader.fieldnames}")
            entries = [
                AuditLogEntry(
                    id=f"audit_{uuid.uuid4().hex}",
                    timestamp=datetime.fromisoformat(row["Timestamp"]),
                    user_id="",
                    username=row["Username"],
                    action=AuditAction(row["Action"]),
                    entity_type=EntityType(row["Entity Type"]),
                    entity_id="",
                    entity_name=row["Entity Name"],
                    reason=row["Reason"] or None,
                )
                for row in reader
            ]
        except (ValueError, KeyError, csv.Error) as e:
            logger.warning(f"Could not parse audit CSV: {e}")
            return Result.fail(ErrorCode.AUDIT_LOG_ERROR, "Could not parse audit CSV", details=str(e))
        return Result.ok(entries)

    @staticmethod
    def import_json(content: str) -> Result[List[AuditLogEntry]]:
        try:
            entries = [AuditLogEntry.from_dict(item) for item in json.loads(content)]
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Could not parse audit JSON: {e}")
            return Result.fail(ErrorCode.AUDIT_LOG_ERROR, "Could not parse audit JSON", details=str(e))
        return Result.ok(entries)
