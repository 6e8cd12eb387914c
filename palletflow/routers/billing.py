from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from palletflow.auth import Principal, Role, require_role
from palletflow.db import get_db
from palletflow.schemas import BillingExportIn, BillingReportOut
from palletflow.services.audit_service import log_audit
from palletflow.services.billing_service import billing_filename, build_billing_report, generate_billing_csv
from palletflow.services.retry_service import run_in_transaction

router = APIRouter(prefix='/billing', tags=['billing'])

cse_access = require_role(Role.CSE)


@router.get('/summary', response_model=BillingReportOut)
def billing_summary(
    from_date: date = Query(...),
    to_date: date = Query(...),
    principal: Principal = Depends(cse_access),
    db: Session = Depends(get_db),
):
    return build_billing_report(db, from_date=from_date, to_date=to_date)


@router.post('/export')
def export_billing_csv(
    payload: BillingExportIn,
    principal: Principal = Depends(cse_access),
    db: Session = Depends(get_db),
):
    report = build_billing_report(db, from_date=payload.from_date, to_date=payload.to_date, notes=payload.notes)
    content = generate_billing_csv(report.metrics, report.hand_delivery_rows)
    filename = billing_filename(payload.from_date, payload.to_date)

    run_in_transaction(
        db,
        lambda: log_audit(
            db,
            actor=principal.id,
            action='BILLING_EXPORTED_CSV',
            metadata={
                'from_date': payload.from_date.isoformat(),
                'to_date': payload.to_date.isoformat(),
                'hand_delivery_rows': len(report.hand_delivery_rows),
            },
        ),
    )

    return StreamingResponse(
        iter([content]),
        media_type='text/csv',
        headers={'Content-Disposition': f'attachment; filename={filename}'},
    )
