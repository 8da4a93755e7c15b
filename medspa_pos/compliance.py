import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy import or_
from sqlalchemy.orm import Session

from medspa_pos.auth import require_roles
from medspa_pos.database import get_db
from medspa_pos.models import ComplianceAlert
from medspa_pos.receipts import render_compliance_export
from medspa_pos.schemas import envelope, serialize_alert

logger = logging.getLogger(__name__)

router = APIRouter()


def filter_alerts(db: Session, type=None, priority=None, status=None, category=None, search=None):
    query = db.query(ComplianceAlert)
    # "All" is what the dashboard dropdowns send for no filter
    for column, value in (
        (ComplianceAlert.type, type),
        (ComplianceAlert.priority, priority),
        (ComplianceAlert.status, status),
        (ComplianceAlert.category, category),
    ):
        if value and value != "All":
            query = query.filter(column == value)
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(
            ComplianceAlert.title.ilike(pattern),
            ComplianceAlert.description.ilike(pattern),
        ))
    return query.order_by(ComplianceAlert.created_at.desc(), ComplianceAlert.id.desc())


def alert_statistics(alerts):
    today = date.today()
    return {
        "total": len(alerts),
        "active": sum(1 for a in alerts if a.status == "active"),
        "critical": sum(1 for a in alerts if a.priority == "critical"),
        "high": sum(1 for a in alerts if a.priority == "high"),
        "overdue": sum(1 for a in alerts if a.status == "active" and a.due_date and a.due_date < today),
        "resolved": sum(1 for a in alerts if a.status == "resolved"),
    }


@router.get("")
def list_alerts(
    type: Optional[str] = None,
    priority: Optional[str] = None,
    status: Optional[str] = None,
    category: Optional[str] = None,
    search: Optional[str] = None,
    db: Session = Depends(get_db),
    principal=Depends(require_roles("admin", "provider")),
):
    alerts = filter_alerts(db, type, priority, status, category, search).all()
    return envelope([serialize_alert(alert) for alert in alerts])


@router.get("/statistics")
def statistics(
    db: Session = Depends(get_db),
    principal=Depends(require_roles("admin", "provider")),
):
    return alert_statistics(db.query(ComplianceAlert).all())


@router.get("/export/pdf")
def export_alerts(
    status: Optional[str] = None,
    priority: Optional[str] = None,
    db: Session = Depends(get_db),
    principal=Depends(require_roles("admin")),
):
    alerts = filter_alerts(db, status=status, priority=priority).all()
    summary = alert_statistics(alerts)
    pdf = render_compliance_export(
        alerts,
        {"status": status, "priority": priority},
        {"total": summary["total"], "active": summary["active"], "critical": summary["critical"]},
    )
    logger.info(f"Exported {len(alerts)} compliance alerts to PDF")
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": "attachment; filename=compliance-alerts.pdf"},
    )


@router.get("/{alert_id}")
def get_alert(
    alert_id: int,
    db: Session = Depends(get_db),
    principal=Depends(require_roles("admin", "provider")),
):
    alert = db.get(ComplianceAlert, alert_id)
    if alert is None:
        raise HTTPException(status_code=404, detail="Compliance alert not found")
    return serialize_alert(alert)
