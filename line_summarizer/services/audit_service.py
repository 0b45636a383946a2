"""
Audit Recorder - append-only log of administrative actions.

Writing an audit entry never breaks the action being audited: a failed
insert is logged at error severity and the caller carries on.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from fastapi import Request
from pymongo.errors import PyMongoError

from line_summarizer.core import metrics
from line_summarizer.core.logging_config import get_logger
from line_summarizer.core.oauth_validator import CallerIdentity
from line_summarizer.models.audit_log import AuditChanges, AuditLog, AuditStatus

logger = get_logger(__name__)


def _request_details(request: Optional[Request]) -> Dict[str, Optional[str]]:
    if request is None:
        return {"ip_address": None, "user_agent": None, "request_id": None}
    forwarded = request.headers.get("x-forwarded-for")
    ip_address = forwarded.split(",")[0].strip() if forwarded else (
        request.client.host if request.client else None
    )
    return {
        "ip_address": ip_address,
        "user_agent": request.headers.get("user-agent"),
        "request_id": getattr(request.state, "correlation_id", None),
    }


class AuditRecorder:
    """Writes and queries AuditLog entries."""

    async def record(
        self,
        action: str,
        *,
        organization_id: Optional[str] = None,
        actor: Optional[CallerIdentity] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        status: AuditStatus = AuditStatus.SUCCESS,
        error_message: Optional[str] = None,
        request: Optional[Request] = None,
    ) -> Optional[AuditLog]:
        category = action.split(":", 1)[0]
        entry = AuditLog(
            organization_id=organization_id,
            user_id=actor.user_id if actor else None,
            user_email=actor.email if actor else None,
            action=action,
            category=category,
            resource_type=resource_type,
            resource_id=resource_id,
            description=description,
            metadata=metadata or {},
            changes=AuditChanges(before=before, after=after) if (before or after) else None,
            status=status,
            error_message=error_message,
            **_request_details(request),
        )

        try:
            await entry.insert()
        except PyMongoError as e:
            logger.error(
                "audit_write_failed",
                action=action,
                organization_id=organization_id,
                resource_id=resource_id,
                error=str(e),
            )
            metrics.audit_entries_total.labels(category=category, status="write_failed").inc()
            return None

        metrics.audit_entries_total.labels(category=category, status=status.value).inc()
        logger.info(
            "audit_recorded",
            action=action,
            organization_id=organization_id,
            user_id=entry.user_id,
            resource_type=resource_type,
            resource_id=resource_id,
            status=status.value,
        )
        return entry

    async def log_success(self, action: str, **kwargs) -> Optional[AuditLog]:
        return await self.record(action, status=AuditStatus.SUCCESS, **kwargs)

    async def log_failure(self, action: str, error_message: str, **kwargs) -> Optional[AuditLog]:
        return await self.record(
            action, status=AuditStatus.FAILURE, error_message=error_message, **kwargs
        )

    async def list_logs(
        self,
        organization_id: str,
        action: Optional[str] = None,
        category: Optional[str] = None,
        user_id: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> Tuple[List[AuditLog], int]:
        """Newest-first audit entries of one organization."""
        query: Dict[str, Any] = {"organization_id": organization_id}
        if action:
            query["action"] = action
        if category:
            query["category"] = category
        if user_id:
            query["user_id"] = user_id
        if resource_type:
            query["resource_type"] = resource_type
        if resource_id:
            query["resource_id"] = resource_id
        if start_date or end_date:
            created: Dict[str, datetime] = {}
            if start_date:
                created["$gte"] = start_date
            if end_date:
                created["$lte"] = end_date
            query["created_at"] = created

        total = await AuditLog.find(query).count()
        logs = await (
            AuditLog.find(query)
            .sort(-AuditLog.created_at)
            .skip((page - 1) * page_size)
            .limit(page_size)
            .to_list()
        )
        return logs, total


_audit_recorder: Optional[AuditRecorder] = None


def get_audit_recorder() -> AuditRecorder:
    global _audit_recorder
    if _audit_recorder is None:
        _audit_recorder = AuditRecorder()
    return _audit_recorder
