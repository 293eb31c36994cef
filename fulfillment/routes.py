from datetime import datetime
from decimal import Decimal
from functools import lru_cache
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel, ConfigDict

from fulfillment.analytics import ATTRIBUTES, top_selling
from fulfillment.auth import require_store_access
from fulfillment.config import get_settings
from fulfillment.database import SessionLocal
from fulfillment.exceptions import NotFound
from fulfillment.gateway import StripeGateway
from fulfillment.marketing import KlaviyoClient, MarketingSync
from fulfillment.models import Store
from fulfillment.store import OrderStore
from fulfillment.workflow import FulfillmentWorkflow

router = APIRouter(prefix="/{store_id}", dependencies=[Depends(require_store_access)])


@lru_cache()
def get_gateway():
    # One instance per process so the reader in-flight set is shared
    return StripeGateway(get_settings())


@lru_cache()
def get_klaviyo_client():
    return KlaviyoClient(get_settings())


def get_marketing():
    return MarketingSync(get_klaviyo_client(), SessionLocal)


def get_workflow(gateway=Depends(get_gateway)):
    settings = get_settings()
    return FulfillmentWorkflow(
        OrderStore(SessionLocal),
        gateway,
        mark_paid_attempts=settings.mark_paid_attempts,
        claim_timeout=settings.capture_claim_timeout,
    )


class ProductOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    our_price: Decimal


class OrderItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    quantity: int
    product_amount: Optional[Decimal] = None
    product: ProductOut


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    store_id: str
    status: str
    is_paid: bool
    has_been_dispatched: bool
    payment_intent_id: Optional[str] = None
    total_amount: Optional[Decimal] = None
    created_at: datetime
    items: List[OrderItemOut]


class Customer(BaseModel):
    name: str
    email: str
    phone_number: Optional[str] = None
    address: Optional[str] = None


class HoldRequest(BaseModel):
    reader_id: str
    amount: int


class CaptureRequest(BaseModel):
    payment_intent_id: str
    customer: Optional[Customer] = None


class CancelRequest(BaseModel):
    reader_id: str


def _check_store(workflow: FulfillmentWorkflow, store_id: str, order_id: str):
    order = workflow.store.get(order_id)
    if order.store_id != store_id:
        raise NotFound(f"Order {order_id} not found", order_id=order_id)
    return order


@router.get("/orders/outstanding", response_model=List[OrderOut])
def list_outstanding(store_id: str, workflow: FulfillmentWorkflow = Depends(get_workflow)):
    return workflow.list_outstanding(store_id)


@router.post("/orders/{order_id}/hold")
def hold_payment(
    store_id: str,
    order_id: str,
    request: HoldRequest,
    workflow: FulfillmentWorkflow = Depends(get_workflow),
):
    _check_store(workflow, store_id, order_id)

    db = SessionLocal()
    store = db.get(Store, store_id)
    db.close()
    currency = (store.currency if store and store.currency else "gbp").lower()

    return workflow.hold_payment(order_id, request.reader_id, request.amount, currency)


@router.post("/orders/{order_id}/capture")
def capture(
    store_id: str,
    order_id: str,
    request: CaptureRequest,
    background_tasks: BackgroundTasks,
    workflow: FulfillmentWorkflow = Depends(get_workflow),
    marketing: MarketingSync = Depends(get_marketing),
):
    order = _check_store(workflow, store_id, order_id)
    result = workflow.start_capture(order_id, request.payment_intent_id)

    if request.customer:
        customer = request.customer
        background_tasks.add_task(
            marketing.register_customer,
            customer.name,
            customer.email,
            get_settings().klaviyo_purchase_list_id,
            customer.phone_number,
        )
        background_tasks.add_task(
            marketing.send_order_confirmation,
            order_id,
            customer.name,
            customer.email,
            customer.address,
            [{"id": item.product_id, "quantity": item.quantity} for item in order.items],
        )

    return result


@router.post("/orders/{order_id}/cancel")
def cancel(
    store_id: str,
    order_id: str,
    request: CancelRequest,
    workflow: FulfillmentWorkflow = Depends(get_workflow),
):
    _check_store(workflow, store_id, order_id)
    return workflow.cancel(order_id, request.reader_id)


@router.post("/orders/{order_id}/dispatch")
def dispatch(store_id: str, order_id: str, workflow: FulfillmentWorkflow = Depends(get_workflow)):
    _check_store(workflow, store_id, order_id)
    return workflow.dispatch(order_id)


@router.get("/stripe/connection_token")
def connection_token(location: Optional[str] = None, gateway=Depends(get_gateway)):
    return {"secret": gateway.create_connection_token(location)}


@router.get("/stripe/readers")
def readers(location: Optional[str] = None, gateway=Depends(get_gateway)):
    return {"readers": list(gateway.list_readers(location))}


@router.get("/analytics/top-selling/{attribute}")
def top_selling_attribute(store_id: str, attribute: str):
    if attribute not in ATTRIBUTES:
        raise HTTPException(status_code=404, detail=f"Unknown attribute {attribute}")

    db = SessionLocal()
    try:
        return top_selling(db, store_id, attribute)
    finally:
        db.close()
