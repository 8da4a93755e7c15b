import logging
from datetime import date, datetime, time, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy import String, cast, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from medspa_pos.auth import require_roles
from medspa_pos.database import get_db
from medspa_pos.models import AuditLog
from medspa_pos.receipts import render_audit_log_export
from medspa_pos.schemas import envelope, serialize_audit_log

logger = logging.getLogger(__name__)

router = APIRouter()


def record_audit(db: Session, user_id, action: str, table_name: str, record_id,
                 new_data=None, old_data=None):
    """Write an audit row in its own commit. Failures are logged, never raised."""
    try:
        db.add(AuditLog(
            user_id=user_id,
            action=action,
            table_name=table_name,
            record_id=record_id,
            old_data=old_data,
            new_data=new_data,
        ))
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(f"Failed to write audit log for {table_name}#{record_id}: {e}")


def filter_audit_logs(db: Session, action=None, table_name=None, user_id=None,
                      start_date: Optional[date] = None, end_date: Optional[date] = None,
                      search=None):
    query = db.query(AuditLog)
    if action and action != "All":
        query = query.filter(AuditLog.action == action)
    if table_name:
        query = query.filter(AuditLog.table_name == table_name)
    if user_id:
        query = query.filter(AuditLog.user_id == user_id)
    if start_date:
        query = query.filter(AuditLog.created_at >= datetime.combine(start_date, time.min))
    if end_date:
        # end date is inclusive
        query = query.filter(AuditLog.created_at < datetime.combine(end_date + timedelta(days=1), time.min))
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(
            AuditLog.action.ilike(pattern),
            AuditLog.table_name.ilike(pattern),
            AuditLog.user_id.ilike(pattern),
            cast(AuditLog.record_id, String).ilike(pattern),
        ))
    return query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())


@router.get("")
def list_audit_logs(
    action: Optional[str] = None,
    table_name: Optional[str] = None,
    user_id: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
    principal=Depends(require_roles("admin")),
):
    query = filter_audit_logs(db, action, table_name, user_id, start_date, end_date, search)
    total = query.count()
    logs = query.offset((page - 1) * per_page).limit(per_page).all()
    return envelope(
        [serialize_audit_log(log) for log in logs],
        total=total, page=page, per_page=per_page,
    )


@router.get("/export/pdf")
def export_audit_logs(
    action: Optional[str] = None,
    table_name: Optional[str] = None,
    user_id: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    search: Optional[str] = None,
    db: Session = Depends(get_db),
    principal=Depends(require_roles("admin")),
):
    logs = filter_audit_logs(db, action, table_name, user_id, start_date, end_date, search).all()
    filters = {
        "action": action, "table": table_name, "user": user_id,
        "from": start_date, "to": end_date, "search": search,
    }
    pdf = render_audit_log_export(logs, filters)
    logger.info(f"Exported {len(logs)} audit logs to PDF")
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": "attachment; filename=audit-logs.pdf"},
    )
