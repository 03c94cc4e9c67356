from __future__ import annotations

import logging
import os
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .cache import CacheBackend, build_cache_backend
from .catalog import CatalogRepository
from .database import get_connection, init_db
from .errors import ServiceError
from .models import OrderFilter, OrderStatus, PaymentFilter, PaymentStatus
from .orders import OrderService
from .payments import PaymentService
from .repository import OrderRepository, PaymentRepository
from . import schemas

logger = logging.getLogger("floor-service")

_cache_backend: Optional[CacheBackend] = None
_cache_resolved = False


def get_connection_factory():
    return get_connection


def get_cache() -> Optional[CacheBackend]:
    global _cache_backend, _cache_resolved
    if not _cache_resolved:
        _cache_backend = build_cache_backend()
        _cache_resolved = True
    return _cache_backend


def build_order_service(
    connection_factory=Depends(get_connection_factory),
    cache: Optional[CacheBackend] = Depends(get_cache),
) -> OrderService:
    return OrderService(
        OrderRepository(connection_factory),
        CatalogRepository(connection_factory),
        cache,
    )


def build_payment_service(
    connection_factory=Depends(get_connection_factory),
    cache: Optional[CacheBackend] = Depends(get_cache),
) -> PaymentService:
    return PaymentService(
        PaymentRepository(connection_factory),
        OrderRepository(connection_factory),
        cache,
    )


def create_app(init_database: bool = True) -> FastAPI:
    if init_database:
        init_db()
    app = FastAPI(
        title="Floor Service",
        version="0.1.0",
        description="Dine-in orders, kitchen tickets and split payments for the restaurant floor.",
    )
    allowed_origins = [
        origin.strip() for origin in os.environ.get("ALLOWED_ORIGINS", "*").split(",")
    ]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "context": exc.context},
        )

    @app.get("/healthz", response_model=schemas.HealthResponse)
    async def healthz() -> schemas.HealthResponse:
        return schemas.HealthResponse(status="ok")

    @app.get("/orders", response_model=schemas.OrderListResponse)
    def list_orders(
        status_filter: Optional[OrderStatus] = Query(default=None, alias="status"),
        server_id: Optional[str] = None,
        table_number: Optional[int] = None,
        min_amount: Optional[float] = None,
        max_amount: Optional[float] = None,
        page: int = 1,
        page_size: int = 10,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        service: OrderService = Depends(build_order_service),
    ) -> schemas.OrderListResponse:
        result = service.find_orders(
            OrderFilter(
                status=status_filter,
                server_id=server_id,
                table_number=table_number,
                min_amount=min_amount,
                max_amount=max_amount,
                page=page,
                page_size=page_size,
                sort_by=sort_by,
                sort_order=sort_order,
            )
        )
        return schemas.OrderListResponse.model_validate(result)

    @app.get("/orders/{order_id}", response_model=schemas.OrderDetail)
    def get_order(
        order_id: str,
        service: OrderService = Depends(build_order_service),
    ) -> schemas.OrderDetail:
        return schemas.OrderDetail.model_validate(service.find_order_by_id(order_id))

    @app.post(
        "/orders",
        response_model=schemas.OrderDetail,
        status_code=status.HTTP_201_CREATED,
    )
    def create_order(
        payload: schemas.CreateOrderRequest,
        service: OrderService = Depends(build_order_service),
    ) -> schemas.OrderDetail:
        return schemas.OrderDetail.model_validate(service.create_order(payload.to_command()))

    @app.post("/orders/{order_id}/items", response_model=schemas.OrderDetail)
    def add_order_items(
        order_id: str,
        payload: schemas.AddOrderItemsRequest,
        service: OrderService = Depends(build_order_service),
    ) -> schemas.OrderDetail:
        view = service.update_items_in_order(
            order_id,
            food_items=[guest.to_group() for guest in payload.food_items],
            drink_items=[guest.to_group() for guest in payload.drink_items],
            expected_version=payload.expected_version,
        )
        return schemas.OrderDetail.model_validate(view)

    @app.patch("/orders/{order_id}", response_model=schemas.OrderDetail)
    def update_order(
        order_id: str,
        payload: schemas.UpdateOrderRequest,
        service: OrderService = Depends(build_order_service),
    ) -> schemas.OrderDetail:
        view = service.update_order_properties(
            order_id, payload.to_update(), expected_version=payload.expected_version
        )
        return schemas.OrderDetail.model_validate(view)

    @app.post("/orders/{order_id}/print", response_model=schemas.MessageResponse)
    def print_items(
        order_id: str,
        payload: schemas.ItemIdsRequest,
        service: OrderService = Depends(build_order_service),
    ) -> schemas.MessageResponse:
        return schemas.MessageResponse(message=service.print_order_items(order_id, payload.ids))

    @app.post("/orders/{order_id}/call", response_model=schemas.MessageResponse)
    def call_items(
        order_id: str,
        payload: schemas.ItemIdsRequest,
        service: OrderService = Depends(build_order_service),
    ) -> schemas.MessageResponse:
        return schemas.MessageResponse(message=service.call_order_items(order_id, payload.ids))

    @app.delete("/orders/{order_id}", status_code=status.HTTP_204_NO_CONTENT)
    def delete_order(
        order_id: str,
        service: OrderService = Depends(build_order_service),
    ) -> Response:
        service.delete_order(order_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/payments", response_model=schemas.PaymentListResponse)
    def list_payments(
        order_id: Optional[str] = None,
        status_filter: Optional[PaymentStatus] = Query(default=None, alias="status"),
        page: int = 1,
        page_size: int = 10,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        service: PaymentService = Depends(build_payment_service),
    ) -> schemas.PaymentListResponse:
        result = service.find_payments(
            PaymentFilter(
                order_id=order_id,
                status=status_filter,
                page=page,
                page_size=page_size,
                sort_by=sort_by,
                sort_order=sort_order,
            )
        )
        return schemas.PaymentListResponse.model_validate(result)

    @app.get("/payments/{payment_id}", response_model=schemas.PaymentSummary)
    def get_payment(
        payment_id: str,
        service: PaymentService = Depends(build_payment_service),
    ) -> schemas.PaymentSummary:
        return schemas.PaymentSummary.model_validate(service.find_payment_by_id(payment_id))

    @app.get("/payments/{payment_id}/refunds", response_model=List[schemas.RefundSummary])
    def list_refunds(
        payment_id: str,
        service: PaymentService = Depends(build_payment_service),
    ) -> List[schemas.RefundSummary]:
        return [
            schemas.RefundSummary.model_validate(refund)
            for refund in service.find_refunds(payment_id)
        ]

    @app.post(
        "/payments",
        response_model=schemas.PaymentSummary,
        status_code=status.HTTP_201_CREATED,
    )
    def create_payment(
        payload: schemas.CreatePaymentRequest,
        service: PaymentService = Depends(build_payment_service),
    ) -> schemas.PaymentSummary:
        record = service.create_payment(
            payload.order_id,
            drink_item_ids=payload.drink_item_ids,
            food_item_ids=payload.food_item_ids,
        )
        return schemas.PaymentSummary.model_validate(record)

    @app.post("/payments/{payment_id}/complete", response_model=schemas.PaymentSummary)
    def complete_payment(
        payment_id: str,
        service: PaymentService = Depends(build_payment_service),
    ) -> schemas.PaymentSummary:
        return schemas.PaymentSummary.model_validate(service.complete_payment(payment_id))

    @app.post("/payments/{payment_id}/refund", response_model=schemas.PaymentSummary)
    def refund_payment(
        payment_id: str,
        payload: schemas.RefundRequest,
        service: PaymentService = Depends(build_payment_service),
    ) -> schemas.PaymentSummary:
        return schemas.PaymentSummary.model_validate(
            service.refund_payment(payment_id, payload.reason)
        )

    @app.post("/payments/{payment_id}/cancel", response_model=schemas.PaymentSummary)
    def cancel_payment(
        payment_id: str,
        service: PaymentService = Depends(build_payment_service),
    ) -> schemas.PaymentSummary:
        return schemas.PaymentSummary.model_validate(service.cancel_payment(payment_id))

    return app
