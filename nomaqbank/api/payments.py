from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from nomaqbank.api.deps import get_current_user, require_admin
from nomaqbank.core.config import settings
from nomaqbank.core.database import get_db
from nomaqbank.models.orm import AccessCategory, TransactionOrigin, TransactionStatus, User
from nomaqbank.services import payments
from nomaqbank.services.processor import StripeProcessor, get_processor

router = APIRouter()


class ProductOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    code: str
    version: int
    name: str
    description: str
    price: float
    currency: str
    duration_days: int
    category: AccessCategory
    is_active: bool


class ProductUpsert(BaseModel):
    code: str = Field(min_length=1, max_length=100)
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0)
    currency: Optional[str] = None
    duration_days: Optional[int] = Field(default=None, gt=0)
    category: Optional[AccessCategory] = None
    processor_price_ref: Optional[str] = None
    is_active: Optional[bool] = None


class CheckoutRequest(BaseModel):
    product_code: str
    success_url: str
    cancel_url: str


class CheckoutOut(BaseModel):
    checkout_url: str
    session_id: str


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    product_id: int
    origin: TransactionOrigin
    status: TransactionStatus
    amount: float
    currency: str
    category: AccessCategory
    duration_days: int
    access_expires_at: Optional[datetime] = None
    payment_method: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class ManualTransactionCreate(BaseModel):
    user_id: int
    product_code: str
    amount: float = Field(ge=0)
    currency: str = settings.DEFAULT_CURRENCY
    payment_method: str
    notes: Optional[str] = None


class ManualTransactionUpdate(BaseModel):
    amount: float = Field(ge=0)
    currency: str
    payment_method: str
    notes: Optional[str] = None
    status: Optional[TransactionStatus] = None


@router.get("/products", response_model=List[ProductOut])
def list_products(db: Session = Depends(get_db)):
    return payments.list_products(db)


@router.put("/products", response_model=ProductOut)
def upsert_product(payload: ProductUpsert, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    fields = payload.model_dump(exclude={"code"}, exclude_none=True)
    return payments.upsert_product(db, admin, payload.code, **fields)


@router.post("/checkout", response_model=CheckoutOut)
def checkout(
    payload: CheckoutRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    processor: StripeProcessor = Depends(get_processor),
):
    return payments.create_checkout(
        db, user, payload.product_code, payload.success_url, payload.cancel_url, processor
    )


@router.get("/transactions/me", response_model=List[TransactionOut])
def my_transactions(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return payments.list_my_transactions(db, user)


@router.get("/transactions", response_model=List[TransactionOut])
def list_transactions(
    origin: Optional[TransactionOrigin] = None,
    status: Optional[TransactionStatus] = None,
    user_id: Optional[int] = None,
    limit: int = 100,
    offset: int = 0,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return payments.list_transactions(
        db, admin, origin=origin, status=status, user_id=user_id, limit=min(limit, 500), offset=offset
    )


@router.get("/transactions/stats")
def transaction_stats(admin: User = Depends(require_admin), db: Session = Depends(get_db)) -> Dict:
    return payments.transaction_stats(db, admin)


@router.post("/transactions/manual", response_model=TransactionOut, status_code=201)
def record_manual(
    payload: ManualTransactionCreate, admin: User = Depends(require_admin), db: Session = Depends(get_db)
):
    return payments.record_manual(
        db, admin, payload.user_id, payload.product_code, payload.amount,
        payload.currency, payload.payment_method, payload.notes,
    )


@router.patch("/transactions/{transaction_id}", response_model=TransactionOut)
def update_manual(
    transaction_id: int,
    payload: ManualTransactionUpdate,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return payments.update_manual(
        db, admin, transaction_id,
        amount=payload.amount, currency=payload.currency, method=payload.payment_method,
        notes=payload.notes, status=payload.status,
    )


@router.delete("/transactions/{transaction_id}")
def delete_manual(transaction_id: int, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return payments.delete_manual(db, admin, transaction_id)


@router.get("/transactions/{transaction_id}/impact")
def access_impact(transaction_id: int, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return payments.get_access_impact(db, admin, transaction_id)
