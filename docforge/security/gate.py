"""
DocForge Upload Gate — decides whether a caller may upload to a DocType now.

Checks run in a fixed order and the first failure is final:

1. DocType exists and is active
2. DocType accepts uploads
3. One of the caller's roles has can_upload        → else reject
4. Caller holds the admin capability               → allow
5. One of the caller's roles has bypass_deadline   → allow
6. DocType has no deadline                         → allow
7. Business-local time is before HH:MM             → allow, else reject

The clock is read in the configured business timezone, never the
server's. A naive ``now`` is taken as business-local wall-clock time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional, Set
from zoneinfo import ZoneInfo

from sqlalchemy import select

from docforge.db.models import DocType, DocTypePermission
from docforge.engine.context import CallerContext, EngineContext
from docforge.engine.logging import log, log_security_event
from docforge.schema.types import DocTypeSpec, FieldSpec

logger = logging.getLogger("docforge.security.gate")


@dataclass
class UploadDecision:
    allowed: bool
    message: str = ""
    deadline: Optional[str] = None
    doctype: Optional[DocTypeSpec] = None


@dataclass
class UploadTarget:
    id: int
    name: str
    slug: str
    icon: Optional[str]
    deadline: Optional[str]


@dataclass
class ViewTarget:
    id: int
    name: str
    slug: str
    table_name: str
    icon: Optional[str]
    description: Optional[str]
    fields: List[FieldSpec] = field(default_factory=list)


class UploadGate:
    """
    Usage:
        gate = UploadGate(ctx)
        decision = gate.can_upload_now(caller, "daily-sales")
        if not decision.allowed:
            raise AuthorizationError(decision.message, deadline=decision.deadline)
    """

    def __init__(self, ctx: EngineContext):
        self._ctx = ctx
        uploads = ctx.config.uploads
        self._tz = ZoneInfo(uploads.business_timezone)
        self._label = uploads.timezone_label

    # ── Time helpers ──

    def format_hhmm(self, hour: int, minute: int) -> str:
        return f"{hour:02d}:{minute:02d} {self._label}"

    def local_now(self, now: Optional[datetime] = None) -> datetime:
        """Current wall-clock time in the business timezone."""
        if now is None:
            now = self._ctx.now()
        if now.tzinfo is None:
            return now.replace(tzinfo=self._tz)
        return now.astimezone(self._tz)

    def deadline_for(self, doctype: DocTypeSpec) -> Optional[str]:
        if doctype.upload_deadline_hour is None:
            return None
        return self.format_hhmm(doctype.upload_deadline_hour, doctype.upload_deadline_minute or 0)

    # ── Data access ──

    def _load(self, slug: str) -> Optional[DocTypeSpec]:
        with self._ctx.database.session_scope() as session:
            doctype = session.scalars(select(DocType).where(DocType.slug == slug)).first()
            return DocTypeSpec.from_model(doctype) if doctype is not None else None

    def _permissions(self, doctype_id: int, role_ids: Iterable[int]) -> List[DocTypePermission]:
        role_ids = list(role_ids)
        if not role_ids:
            return []
        with self._ctx.database.session_scope() as session:
            return list(
                session.scalars(
                    select(DocTypePermission).where(
                        DocTypePermission.doctype_id == doctype_id,
                        DocTypePermission.role_id.in_(role_ids),
                    )
                )
            )

    def _deny(
        self,
        caller: CallerContext,
        slug: str,
        roles: Set[int],
        message: str,
        deadline: Optional[str] = None,
        doctype: Optional[DocTypeSpec] = None,
    ) -> UploadDecision:
        logger.info("Upload denied for user %s on %s: %s", caller.user_id, slug, message)
        log(log_security_event("upload_denied", slug, caller.user_id, list(roles), message))
        return UploadDecision(False, message, deadline, doctype)

    # ── Checks ──

    def can_upload_now(
        self,
        caller: CallerContext,
        slug: str,
        now: Optional[datetime] = None,
    ) -> UploadDecision:
        doctype = self._load(slug)
        if doctype is None:
            return self._deny(caller, slug, set(), f"DocType '{slug}' not found")
        if not doctype.is_active:
            return self._deny(caller, slug, set(), f"DocType '{doctype.name}' is not active",
                              doctype=doctype)
        if not doctype.is_upload_active:
            return self._deny(caller, slug, set(),
                              f"Uploads for '{doctype.name}' are disabled", doctype=doctype)

        roles = self._ctx.roles_for(caller)
        permissions = self._permissions(doctype.id, roles)
        if not any(p.can_upload for p in permissions):
            return self._deny(caller, slug, roles,
                              f"You are not allowed to upload '{doctype.name}'", doctype=doctype)

        deadline = self.deadline_for(doctype)

        if self._ctx.is_admin(caller):
            return UploadDecision(True, "Admin bypass", deadline, doctype)

        if any(p.bypass_deadline for p in permissions):
            return UploadDecision(True, "Role bypasses the deadline", deadline, doctype)

        if deadline is None:
            return UploadDecision(True, "", None, doctype)

        local = self.local_now(now)
        cutoff = (doctype.upload_deadline_hour, doctype.upload_deadline_minute or 0)
        if (local.hour, local.minute) < cutoff:
            return UploadDecision(True, "", deadline, doctype)

        current = self.format_hhmm(local.hour, local.minute)
        return self._deny(
            caller,
            slug,
            roles,
            f"The upload deadline for '{doctype.name}' is {deadline}. It is now {current}.",
            deadline=deadline,
            doctype=doctype,
        )

    def can_view(self, caller: CallerContext, doctype_id: int) -> bool:
        if self._ctx.is_admin(caller):
            return True
        roles = self._ctx.roles_for(caller)
        return any(p.can_view for p in self._permissions(doctype_id, roles))

    def uploadable_doctypes(self, caller: CallerContext) -> List[UploadTarget]:
        """Active, upload-enabled DocTypes the caller can upload to, by name."""
        stmt = (
            select(DocType)
            .where(DocType.is_active.is_(True), DocType.is_upload_active.is_(True))
            .order_by(DocType.name)
        )
        if not self._ctx.is_admin(caller):
            roles = self._ctx.roles_for(caller)
            if not roles:
                return []
            allowed = (
                select(DocTypePermission.doctype_id)
                .where(
                    DocTypePermission.role_id.in_(list(roles)),
                    DocTypePermission.can_upload.is_(True),
                )
            )
            stmt = stmt.where(DocType.id.in_(allowed))

        with self._ctx.database.session_scope() as session:
            return [
                UploadTarget(
                    id=d.id,
                    name=d.name,
                    slug=d.slug,
                    icon=d.icon,
                    deadline=(
                        self.format_hhmm(d.upload_deadline_hour, d.upload_deadline_minute or 0)
                        if d.upload_deadline_hour is not None
                        else None
                    ),
                )
                for d in session.scalars(stmt)
            ]

    def viewable_doctypes(self, caller: CallerContext) -> List[ViewTarget]:
        """
        Active DocTypes the caller can view, by name.

        Admins see every active DocType. Each target carries only the
        fields flagged ``show_in_list``, in sort order, so a listing
        can render its columns without loading the full schema.
        """
        stmt = select(DocType).where(DocType.is_active.is_(True)).order_by(DocType.name)
        if not self._ctx.is_admin(caller):
            roles = self._ctx.roles_for(caller)
            if not roles:
                return []
            allowed = (
                select(DocTypePermission.doctype_id)
                .where(
                    DocTypePermission.role_id.in_(list(roles)),
                    DocTypePermission.can_view.is_(True),
                )
            )
            stmt = stmt.where(DocType.id.in_(allowed))

        with self._ctx.database.session_scope() as session:
            targets = []
            for d in session.scalars(stmt):
                spec = DocTypeSpec.from_model(d)
                targets.append(
                    ViewTarget(
                        id=d.id,
                        name=d.name,
                        slug=d.slug,
                        table_name=d.table_name,
                        icon=d.icon,
                        description=d.description,
                        fields=[f for f in spec.fields if f.show_in_list],
                    )
                )
            return targets
