import uvicorn
import json
from typing import Annotated
from uuid import uuid4

import structlog
from fastapi import APIRouter, Depends, FastAPI, Header, Path, Request
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payment_service import messaging
from payment_service.config import Settings
from payment_service.database import Database
from payment_service.exceptions import OrderNotFound, PaymentServiceError, ValidationError
from payment_service.gateway import StripeGatewayClient
from payment_service.logging_config import configure_logging
from payment_service.models import Order, OrderStatus, OrderStatusHistory, utcnow
from payment_service.retry import RetryCoordinator
from payment_service.schemas import (
    ORDER_ID_PATTERN,
    OrderCreate,
    OrderRead,
    PaymentInitiated,
    PaymentReviewRead,
    PaymentStatusRead,
)
from payment_service.state_machine import PaymentStateMachine, client_status
from payment_service.webhooks import WebhookHandler

log = structlog.get_logger(__name__)

router = APIRouter()

OrderId = Annotated[str, Path(pattern=ORDER_ID_PATTERN)]


async def get_session(request: Request):
    async for session in request.app.state.database.get_session():
        yield session


def get_state_machine(request: Request) -> PaymentStateMachine:
    return request.app.state.state_machine


@router.get("/health")
async def health():
    return {"status": "ok"}


@router.post("/api/orders", response_model=OrderRead, status_code=201)
async def create_order(order_data: OrderCreate, request: Request, db: AsyncSession = Depends(get_session)):
    settings: Settings = request.app.state.settings
    currency = (order_data.currency or settings.store_currency).lower()
    if currency != settings.store_currency:
        raise ValidationError(f"Only {settings.store_currency} orders are accepted")

    now = utcnow()
    new_order = Order(
        id=str(uuid4()),
        customer_id=order_data.customer_id,
        items=json.dumps([item.model_dump() for item in order_data.items]),
        amount=order_data.amount,
        currency=currency,
        status=OrderStatus.CREATED,
        created_at=now,
        updated_at=now,
        history=[OrderStatusHistory(status=OrderStatus.CREATED, note="order placed", created_at=now)],
    )
    db.add(new_order)
    await db.commit()
    log.info("order_created", order_id=new_order.id, amount=str(new_order.amount))

    order = await db.get(Order, new_order.id, populate_existing=True)
    return OrderRead.model_validate(order)


@router.get("/api/orders", response_model=list[OrderRead], status_code=200)
async def get_orders(db: AsyncSession = Depends(get_session)):
    result = await db.execute(select(Order).order_by(Order.created_at))
    orders = result.scalars().all()
    return [OrderRead.model_validate(order) for order in orders]


@router.get("/api/orders/{order_id}", response_model=OrderRead)
async def get_order(order_id: OrderId, db: AsyncSession = Depends(get_session)):
    order = await db.get(Order, order_id)
    if not order:
        raise OrderNotFound(order_id)
    return OrderRead.model_validate(order)


@router.post("/api/orders/{order_id}/cancel", response_model=OrderRead)
async def cancel_order(order_id: OrderId, machine: PaymentStateMachine = Depends(get_state_machine)):
    order = await machine.cancel(order_id)
    return OrderRead.model_validate(order)


@router.post("/api/payments/initiate/{order_id}", response_model=PaymentInitiated)
async def initiate_payment(order_id: OrderId, machine: PaymentStateMachine = Depends(get_state_machine)):
    payment = await machine.initiate(order_id)
    return PaymentInitiated.model_validate(payment)


@router.post("/api/payments/retry/{order_id}", response_model=PaymentInitiated)
async def retry_payment(request: Request, order_id: OrderId):
    payment = await request.app.state.retry_coordinator.retry(order_id)
    return PaymentInitiated.model_validate(payment)


@router.get("/api/payments/status/{order_id}", response_model=PaymentStatusRead)
async def get_payment_status(order_id: OrderId, machine: PaymentStateMachine = Depends(get_state_machine)):
    order = await machine.payment_status(order_id)
    return PaymentStatusRead(order_id=order.id, status=client_status(order.status))


@router.post("/api/payments/webhook")
async def payment_webhook(request: Request, stripe_signature: str | None = Header(default=None)):
    payload = await request.body()
    ack = await request.app.state.webhook_handler.handle(payload, stripe_signature)
    return JSONResponse(status_code=ack.status_code, content=ack.model_dump())


@router.get("/api/payments/reviews", response_model=list[PaymentReviewRead])
async def list_payment_reviews(machine: PaymentStateMachine = Depends(get_state_machine)):
    reviews = await machine.open_reviews()
    return [PaymentReviewRead.model_validate(review) for review in reviews]


async def payment_error_handler(request: Request, exc: PaymentServiceError):
    if exc.status_code >= 500:
        log.error("request_failed", path=request.url.path, error=str(exc), code=exc.code)
    else:
        log.info("request_rejected", path=request.url.path, error=str(exc), code=exc.code)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.public_message, "code": exc.code},
    )


def create_app(settings: Settings | None = None, database: Database | None = None,
               gateway=None, publisher=None) -> FastAPI:
    settings = settings or Settings.from_env()
    database = database or Database(settings.database_url)
    gateway = gateway or StripeGatewayClient(settings)
    if publisher is None and settings.publish_events:
        publisher = messaging.publish_event

    state_machine = PaymentStateMachine(database.session_factory, gateway, settings, publisher=publisher)

    app = FastAPI(title="Payment Service")
    app.state.settings = settings
    app.state.database = database
    app.state.state_machine = state_machine
    app.state.retry_coordinator = RetryCoordinator(state_machine, database.session_factory, settings)
    app.state.webhook_handler = WebhookHandler(state_machine, settings)
    app.include_router(router)
    app.add_exception_handler(PaymentServiceError, payment_error_handler)

    @app.on_event("startup")
    async def startup_event():
        configure_logging(settings.log_level)
        await database.init_db()
        if settings.publish_events:
            await messaging.setup_rabbitmq(settings.rabbitmq_url)

    @app.on_event("shutdown")
    async def shutdown_event():
        await messaging.close_rabbitmq()
        await database.dispose()

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
