"""
Notification service: in-app rows plus templated email.

In-app notifications and recipient emails are resolved DURING the request
(while the DB session is open); the email itself goes out via BackgroundTasks
after the response is sent.
"""

from typing import Optional

from fastapi import BackgroundTasks
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from crm_api.config import settings
from crm_api.exceptions import DependencyFailureError
from crm_api.models.approval import ApprovalRequest
from crm_api.models.notification import AppNotification
from crm_api.models.user import User
from crm_api.services.email_service import send_email

logger = structlog.get_logger()

# ---------- Template registry ----------

TEMPLATES = {
    "approval_requested": {
        "title": "Approval required: {request_number}",
        "body": "{actor_name} requested {type_label} approval: {title}",
        "subject": "[EstateCRM] {request_number}: Your Approval Required",
        "html": (
            "<h2>Approval Required</h2>"
            "<p><strong>{actor_name}</strong> requested approval for "
            "<strong>{title}</strong> ({request_number}).</p>"
            "<p><strong>Type:</strong> {type_label}</p>"
            "<p><strong>Priority:</strong> {priority}</p>"
            "<p><strong>Due by:</strong> {sla_deadline}</p>"
            "<p><a href='{action_url}'>Review the request</a></p>"
        ),
    },
    "approval_approved": {
        "title": "Approved: {request_number}",
        "body": "{actor_name} approved your {type_label} request",
        "subject": "[EstateCRM] {request_number}: Approved",
        "html": (
            "<h2>Request Approved</h2>"
            "<p>Your request <strong>{title}</strong> ({request_number}) has been "
            "<span style='color:green'>approved</span> by {actor_name}.</p>"
            "<p><a href='{action_url}'>View the request</a></p>"
        ),
    },
    "approval_rejected": {
        "title": "Rejected: {request_number}",
        "body": "{actor_name} rejected your {type_label} request: {reason}",
        "subject": "[EstateCRM] {request_number}: Rejected",
        "html": (
            "<h2>Request Rejected</h2>"
            "<p>Your request <strong>{title}</strong> ({request_number}) has been "
            "<span style='color:red'>rejected</span> by {actor_name}.</p>"
            "<p><strong>Reason:</strong> {reason}</p>"
            "<p><a href='{action_url}'>View the request</a></p>"
        ),
    },
    "approval_escalated": {
        "title": "Escalated to you: {request_number}",
        "body": "{type_label} request {request_number} is overdue (level {level} escalation)",
        "subject": "[EstateCRM] {request_number}: Escalated for Your Approval",
        "html": (
            "<h2>Approval Escalated</h2>"
            "<p>The request <strong>{title}</strong> ({request_number}) has passed "
            "its SLA and was escalated to you (level {level}).</p>"
            "<p><a href='{action_url}'>Review the request</a></p>"
        ),
    },
    "approval_cancelled": {
        "title": "Withdrawn: {request_number}",
        "body": "{actor_name} withdrew the {type_label} request",
        "subject": "[EstateCRM] {request_number}: Withdrawn",
        "html": (
            "<h2>Request Withdrawn</h2>"
            "<p>{actor_name} cancelled <strong>{title}</strong> ({request_number}). "
            "No action is needed.</p>"
            "<p><strong>Reason:</strong> {reason}</p>"
        ),
    },
}


def _render(template_id: str, context: dict) -> Optional[dict]:
    template = TEMPLATES.get(template_id)
    if not template:
        logger.warning("notification_template_not_found", template_id=template_id)
        return None
    try:
        return {key: text.format(**context) for key, text in template.items()}
    except KeyError as e:
        logger.error("notification_template_render_error", template_id=template_id, missing_key=str(e))
        return None


async def resolve_user_emails(
    session: AsyncSession, user_ids: list[str]
) -> list[str]:
    """Batch look up emails for active user IDs."""
    if not user_ids:
        return []
    result = await session.execute(
        select(User.email).where(User.id.in_(user_ids), User.is_active == True)  # noqa: E712
    )
    return [row[0] for row in result.all()]


async def _display_name(session: AsyncSession, user_id) -> str:
    if not user_id:
        return "System"
    user = await session.get(User, user_id)
    return user.full_name if user else "A user"


async def send_notification(
    template_id: str,
    recipient_emails: list[str],
    context: dict,
) -> bool:
    """Render template and dispatch email. Runs as a background task."""
    rendered = _render(template_id, context)
    if rendered is None:
        return False
    if not recipient_emails:
        logger.warning("notification_no_recipients", template_id=template_id)
        return False

    result = await send_email(
        recipient_emails, rendered["subject"], rendered["html"], tags=[template_id]
    )
    logger.info(
        "notification_sent",
        template_id=template_id,
        recipients=recipient_emails,
        success=result,
    )
    return result


async def _notify(
    session: AsyncSession,
    background_tasks: Optional[BackgroundTasks],
    template_id: str,
    request: ApprovalRequest,
    recipient_ids: list,
    actor_id=None,
    **extra,
) -> int:
    recipient_ids = [str(r) for r in recipient_ids if r]
    if not recipient_ids:
        return 0

    try:
        context = {
            "request_number": request.request_number,
            "title": request.title,
            "type_label": request.approval_type.replace("_", " ").title(),
            "priority": request.priority,
            "sla_deadline": (
                request.sla_deadline.strftime("%Y-%m-%d %H:%M UTC")
                if request.sla_deadline
                else "n/a"
            ),
            "action_url": f"{settings.APP_BASE_URL}/approvals/{request.id}",
            "actor_name": await _display_name(session, actor_id),
            **extra,
        }
        rendered = _render(template_id, context)
        if rendered is None:
            return 0

        for user_id in recipient_ids:
            session.add(AppNotification(
                organization_id=request.organization_id,
                user_id=user_id,
                title=rendered["title"][:255],
                body=rendered["body"],
                type=template_id,
                entity_type="ApprovalRequest",
                entity_id=str(request.id),
                action_url=context["action_url"],
            ))
        await session.flush()

        emails = await resolve_user_emails(session, recipient_ids)
    except SQLAlchemyError as exc:
        raise DependencyFailureError("notifier", str(exc)) from exc

    if emails and background_tasks is not None:
        background_tasks.add_task(send_notification, template_id, emails, context)

    logger.info(
        "approval_notification_queued",
        template_id=template_id,
        approval_request_id=str(request.id),
        recipients=len(recipient_ids),
        emails=len(emails),
    )
    return len(recipient_ids)


async def notify_approval_requested(
    session: AsyncSession,
    background_tasks: Optional[BackgroundTasks],
    request: ApprovalRequest,
    approver_ids: list,
) -> int:
    return await _notify(
        session, background_tasks, "approval_requested", request,
        approver_ids, actor_id=request.requested_by,
    )


async def notify_approval_approved(
    session: AsyncSession,
    background_tasks: Optional[BackgroundTasks],
    request: ApprovalRequest,
    approved_by,
) -> int:
    return await _notify(
        session, background_tasks, "approval_approved", request,
        [request.requested_by], actor_id=approved_by,
    )


async def notify_approval_rejected(
    session: AsyncSession,
    background_tasks: Optional[BackgroundTasks],
    request: ApprovalRequest,
    rejected_by,
    reason: Optional[str] = None,
) -> int:
    return await _notify(
        session, background_tasks, "approval_rejected", request,
        [request.requested_by], actor_id=rejected_by,
        reason=reason or "No reason given",
    )


async def notify_approval_escalated(
    session: AsyncSession,
    background_tasks: Optional[BackgroundTasks],
    request: ApprovalRequest,
    escalated_to,
    level: int,
) -> int:
    return await _notify(
        session, background_tasks, "approval_escalated", request,
        [escalated_to], level=level,
    )


async def notify_approval_cancelled(
    session: AsyncSession,
    background_tasks: Optional[BackgroundTasks],
    request: ApprovalRequest,
    approver_ids: list,
    reason: Optional[str] = None,
) -> int:
    return await _notify(
        session, background_tasks, "approval_cancelled", request,
        approver_ids, actor_id=request.requested_by,
        reason=reason or "No reason given",
    )
