import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime

from dotenv import load_dotenv

load_dotenv()

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select, text
from sqlalchemy.orm import Session

from .db.deps import get_lending_db
from .db.session import SessionLocalLending, engine_lending, init_db
from .models.lending_models import EquipmentItem
from .schemas.borrowings import BorrowingCreate, BorrowingStatusUpdate, ReturnSubmission
from .schemas.equipment import EquipmentCreate, QuantityMove
from .schemas.guests import GuestBorrowRequestCreate, GuestStatusUpdate, OtpRequest, OtpVerification
from .schemas.returns import FeeSettlement, ReturnReview
from .services import ledger_service
from .services.audit_service import list_audit_entries
from .services.borrowing_service import RegularBorrowingWorkflow
from .services.equipment_service import create_equipment, get_equipment, serialize_equipment
from .services.errors import ActionResult, LendingError, ValidationError
from .services.guest_borrowing_service import GuestBorrowingWorkflow
from .services.notification_service import QueueNotifier, SmtpEmailSender, dispatch_pending, list_pending
from .services.otp_service import send_otp, verify_otp
from .services.return_service import ReturnReviewService, list_returns, serialize_return
from .services.workflow import run_action
from .settings import load_settings


logging.basicConfig(
    level=(os.environ.get("LOG_LEVEL") or "INFO").strip().upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
LOGGER = logging.getLogger("lending_engine.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db(engine_lending)
    yield


app = FastAPI(title="Lending Engine", lifespan=lifespan)


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5001,http://localhost:5001",
)
_CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)

SETTINGS = load_settings()
NOTIFIER = QueueNotifier(
    SessionLocalLending,
    SmtpEmailSender(SETTINGS.smtp) if SETTINGS.smtp else None,
)
REGULAR_FLOW = RegularBorrowingWorkflow(SETTINGS, NOTIFIER)
GUEST_FLOW = GuestBorrowingWorkflow(SETTINGS, NOTIFIER)
RETURN_REVIEW = ReturnReviewService(SETTINGS, NOTIFIER)


@app.exception_handler(RequestValidationError)
def _request_validation_handler(request: Request, exc: RequestValidationError):
    problems = [
        {"loc": [str(part) for part in error.get("loc", ())], "msg": str(error.get("msg", ""))}
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "error": {"kind": "ValidationError", "message": "Invalid request.", "details": problems},
        },
    )


@app.exception_handler(LendingError)
def _lending_error_handler(request: Request, exc: LendingError):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.to_dict()})


def _result_response(result: ActionResult, created: bool = False) -> JSONResponse:
    status_code = result.status_code
    if created and result.success:
        status_code = 201
    return JSONResponse(status_code=status_code, content=_jsonable(result.to_dict()))


def _jsonable(value):
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _kwargs(**values) -> dict:
    return {key: value for key, value in values.items() if value is not None}


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_lending_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


# Equipment and ledger

@app.get("/api/equipment")
def list_equipment(db: Session = Depends(get_lending_db)):
    items = db.execute(select(EquipmentItem).order_by(EquipmentItem.Name)).scalars().all()
    return [serialize_equipment(item) for item in items]


@app.get("/api/equipment/{equipment_id}")
def get_equipment_detail(equipment_id: int, db: Session = Depends(get_lending_db)):
    return serialize_equipment(get_equipment(db, equipment_id))


@app.post("/api/equipment")
def create_equipment_item(payload: EquipmentCreate, db: Session = Depends(get_lending_db)):
    def _create(outbox):
        item = create_equipment(
            db,
            name=payload.name,
            total=payload.totalQuantity,
            category=payload.category,
            condition=payload.condition or "Good",
            room_assigned=payload.roomAssigned,
            item_code=payload.itemCode,
            can_be_borrowed=payload.canBeBorrowed,
        )
        return ActionResult.ok(serialize_equipment(item), message="Equipment created.")

    return _result_response(run_action(db, _create), created=True)


@app.post("/api/equipment/{equipment_id}/maintenance")
def move_maintenance(equipment_id: int, payload: QuantityMove, db: Session = Depends(get_lending_db)):
    direction = (payload.direction or "send").strip().lower()

    def _move(outbox):
        if direction == "send":
            ledger = ledger_service.send_to_maintenance(db, equipment_id, payload.quantity)
        elif direction == "restore":
            ledger = ledger_service.restore_from_maintenance(db, equipment_id, payload.quantity)
        else:
            raise ValidationError("direction must be send or restore.", direction=direction)
        return ActionResult.ok(ledger.to_dict(), message=f"Maintenance {direction} recorded.")

    return _result_response(run_action(db, _move))


@app.post("/api/equipment/{equipment_id}/disposal")
def dispose_equipment(equipment_id: int, payload: QuantityMove, db: Session = Depends(get_lending_db)):
    def _dispose(outbox):
        ledger = ledger_service.dispose(db, equipment_id, payload.quantity, from_maintenance=payload.fromMaintenance)
        return ActionResult.ok(ledger.to_dict(), message="Disposal recorded.")

    return _result_response(run_action(db, _dispose))


# Regular borrowings

@app.get("/api/borrowings")
def list_borrowings(
    status: str | None = Query(None),
    borrowerID: str | None = Query(None),
    equipmentID: int | None = Query(None),
    overdue: bool = Query(False),
    db: Session = Depends(get_lending_db),
):
    return REGULAR_FLOW.list_requests(
        db,
        status=status,
        borrower_id=borrowerID,
        equipment_id=equipmentID,
        overdue_only=overdue,
    )


@app.post("/api/borrowings")
def submit_borrowing(payload: BorrowingCreate, db: Session = Depends(get_lending_db)):
    return _result_response(REGULAR_FLOW.submit(db, payload), created=True)


@app.get("/api/borrowings/{borrowing_id}")
def get_borrowing(borrowing_id: int, db: Session = Depends(get_lending_db)):
    return _result_response(REGULAR_FLOW.get(db, borrowing_id))


@app.patch("/api/borrowings/{borrowing_id}")
def update_borrowing_status(
    borrowing_id: int,
    payload: BorrowingStatusUpdate,
    db: Session = Depends(get_lending_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
):
    result = REGULAR_FLOW.apply_action(
        db,
        borrowing_id,
        payload.status,
        remarks=payload.remarks,
        actor_id=payload.actorID or x_actor_id,
        **_kwargs(
            borrower_id=payload.borrowerID,
            condition_on_borrow=payload.conditionOnBorrow,
            condition_after=payload.conditionAfter,
            damage_description=payload.damageDescription,
            damage_severity=payload.damageSeverity,
            damage_fee=payload.damageFee,
        ),
    )
    return _result_response(result)


@app.post("/api/borrowings/{borrowing_id}/return")
def submit_return(borrowing_id: int, payload: ReturnSubmission, db: Session = Depends(get_lending_db)):
    result = REGULAR_FLOW.return_item(
        db,
        borrowing_id,
        borrower_id=payload.borrowerID,
        condition_after=payload.conditionAfter,
        damage_description=payload.damageDescription,
        damage_severity=payload.damageSeverity,
    )
    return _result_response(result, created=True)


@app.delete("/api/borrowings/{borrowing_id}/return")
def cancel_return_request(
    borrowing_id: int,
    borrowerID: str | None = Query(None),
    db: Session = Depends(get_lending_db),
):
    return _result_response(REGULAR_FLOW.cancel_return(db, borrowing_id, borrower_id=borrowerID))


# Returns and fees

@app.get("/api/returns")
def get_returns(
    status: str | None = Query(None),
    borrowingID: int | None = Query(None),
    borrowerType: str | None = Query(None),
    db: Session = Depends(get_lending_db),
):
    records = list_returns(db, status=status, borrowing_id=borrowingID, borrower_type=borrowerType)
    return [serialize_return(record) for record in records]


@app.get("/api/returns/{return_id}")
def get_return_detail(return_id: int, db: Session = Depends(get_lending_db)):
    return _result_response(RETURN_REVIEW.get(db, return_id))


@app.patch("/api/returns/{return_id}")
def review_return(
    return_id: int,
    payload: ReturnReview,
    db: Session = Depends(get_lending_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
):
    result = RETURN_REVIEW.review(
        db,
        return_id,
        payload.decision,
        damage_fee=payload.damageFee,
        remarks=payload.remarks,
        actor_id=payload.reviewedBy or x_actor_id,
    )
    return _result_response(result)


@app.post("/api/returns/{return_id}/settle-fee")
def settle_return_fee(
    return_id: int,
    payload: FeeSettlement | None = None,
    db: Session = Depends(get_lending_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
):
    actor_id = (payload.receivedBy if payload else None) or x_actor_id
    return _result_response(RETURN_REVIEW.settle_fee(db, return_id, actor_id=actor_id))


# Guest verification and borrowing

@app.post("/api/guest/otp")
def request_guest_otp(payload: OtpRequest, db: Session = Depends(get_lending_db)):
    result = send_otp(db, SETTINGS, NOTIFIER, payload.email, payload.firstName, payload.lastName)
    return _result_response(result)


@app.post("/api/guest/otp/verify")
def verify_guest_otp(payload: OtpVerification, db: Session = Depends(get_lending_db)):
    return _result_response(verify_otp(db, SETTINGS, payload.email, payload.otp))


@app.get("/api/guest/borrow-requests")
def lookup_guest_requests(
    schoolId: str | None = Query(None),
    email: str | None = Query(None),
    db: Session = Depends(get_lending_db),
):
    if schoolId:
        return GUEST_FLOW.find_by_school_id(db, schoolId)
    if email:
        return GUEST_FLOW.find_by_email(db, email)
    raise ValidationError("schoolId or email is required.")


@app.post("/api/guest/borrow-requests")
def submit_guest_request(payload: GuestBorrowRequestCreate, db: Session = Depends(get_lending_db)):
    return _result_response(GUEST_FLOW.submit(db, payload), created=True)


@app.get("/api/guest-borrowings")
def list_guest_borrowings(status: str | None = Query(None), db: Session = Depends(get_lending_db)):
    return GUEST_FLOW.list_requests(db, status=status)


@app.patch("/api/guest-borrowings/{guest_request_id}")
def update_guest_borrowing(
    guest_request_id: int,
    payload: GuestStatusUpdate,
    db: Session = Depends(get_lending_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
):
    result = GUEST_FLOW.apply_action(
        db,
        guest_request_id,
        payload.status,
        remarks=payload.adminNotes,
        actor_id=payload.actorID or x_actor_id,
        **_kwargs(
            condition_after=payload.conditionAfter,
            damage_description=payload.damageDescription,
            damage_severity=payload.damageSeverity,
        ),
    )
    return _result_response(result)


# Notifications and audit

@app.post("/api/notifications/run")
def run_notifications(limit: int = Query(100), db: Session = Depends(get_lending_db)):
    if NOTIFIER.sender is None:
        raise HTTPException(status_code=503, detail="SMTP is not configured.")
    return dispatch_pending(db, NOTIFIER.sender, limit=limit)


@app.get("/api/notifications/pending")
def pending_notifications(db: Session = Depends(get_lending_db)):
    return list_pending(db)


@app.get("/api/audit/{entity_type}/{entity_id}")
def get_audit_trail(entity_type: str, entity_id: int, db: Session = Depends(get_lending_db)):
    return list_audit_entries(db, entity_type, entity_id)
