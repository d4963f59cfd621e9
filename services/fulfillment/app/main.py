"""
Fulfillment Service — FastAPI entry point

Following CQRS, state changes go through Command (POST) endpoints and reads
through Query (GET) endpoints. Every order change is recorded as an event.

┌──────────┐  /commands  ┌──────────────────┐      ┌──────────────┐
│  client  │ ──────────▶ │ OrderStateMachine│ ───▶ │ events+orders│
│ (JWT)    │             │ + InventoryLedger│      │ + inventory  │
│          │  /queries   ├──────────────────┤      └──────┬───────┘
│          │ ◀────────── │   QueryService   │ ◀───────────┘
└──────────┘  (+ WS)     └──────────────────┘
                         after commit: notifications queue, live updates
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from uuid import UUID

from fastapi import Depends, FastAPI, Header, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse

from .auth import InvalidToken, decode_token, get_current_actor, require_admin
from .config import Settings
from .container import Services, build_services
from .errors import Forbidden, FulfillmentError
from .logging_config import setup_logging
from .queries import authorize_read
from .reconcile import find_divergence
from .schemas import (
    Actor,
    AdjustStockRequest,
    Invoice,
    ListProductRequest,
    Order,
    PackingRequest,
    PickRequest,
    PlaceOrderRequest,
    ReviewRequest,
    StockAdjustment,
    StockLevel,
    TransitionRequest,
)
from .transitions import OrderStatus, Role

logger = logging.getLogger(__name__)


def get_services(request: Request) -> Services:
    return request.app.state.services


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    settings = settings or (services.settings if services else Settings.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.log_level)
        app.state.services = services or build_services(settings)
        await app.state.services.start()
        logger.info("Fulfillment service started (store: %s)", type(app.state.services.store).__name__)
        yield
        await app.state.services.stop()

    app = FastAPI(title="Fulfillment Service", lifespan=lifespan)
    app.state.settings = settings

    @app.exception_handler(FulfillmentError)
    async def fulfillment_error_handler(request: Request, exc: FulfillmentError):
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    # ── Command Endpoints (write side) ───────────

    @app.post("/commands/orders", status_code=status.HTTP_201_CREATED, response_model=Order)
    async def cmd_place_order(
        req: PlaceOrderRequest,
        actor: Actor = Depends(get_current_actor),
        svc: Services = Depends(get_services),
    ):
        return await svc.machine.place_order(req, actor)

    @app.post("/commands/orders/{order_id}/transition", response_model=Order)
    async def cmd_transition(
        order_id: UUID,
        req: TransitionRequest,
        idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
        actor: Actor = Depends(get_current_actor),
        svc: Services = Depends(get_services),
    ):
        """The single entry point for status changes."""
        return await svc.machine.transition(
            order_id,
            req.target_status,
            actor,
            req.expected_version,
            note=req.note,
            idempotency_key=idempotency_key or req.idempotency_key,
        )

    @app.post("/commands/orders/{order_id}/picking", response_model=Order)
    async def cmd_mark_picked(
        order_id: UUID,
        req: PickRequest,
        actor: Actor = Depends(get_current_actor),
        svc: Services = Depends(get_services),
    ):
        return await svc.machine.mark_picked(
            order_id, req.line_index, actor, req.expected_version, picked=req.picked, note=req.note
        )

    @app.post("/commands/orders/{order_id}/packing", response_model=Order)
    async def cmd_update_packing(
        order_id: UUID,
        req: PackingRequest,
        actor: Actor = Depends(get_current_actor),
        svc: Services = Depends(get_services),
    ):
        return await svc.machine.update_packing(
            order_id, req.checklist, actor, req.expected_version, notes=req.notes
        )

    @app.post("/commands/orders/{order_id}/review", response_model=Order)
    async def cmd_review(
        order_id: UUID,
        req: ReviewRequest,
        actor: Actor = Depends(get_current_actor),
        svc: Services = Depends(get_services),
    ):
        return await svc.machine.review(
            order_id, req.rating, actor, req.expected_version, review=req.review
        )

    @app.post("/commands/inventory", status_code=status.HTTP_201_CREATED, response_model=StockLevel)
    async def cmd_list_product(
        req: ListProductRequest,
        actor: Actor = Depends(get_current_actor),
        svc: Services = Depends(get_services),
    ):
        return await svc.ledger.list_product(req, actor)

    @app.post("/commands/inventory/{product_id}/adjust", response_model=StockLevel)
    async def cmd_adjust_stock(
        product_id: str,
        req: AdjustStockRequest,
        actor: Actor = Depends(get_current_actor),
        svc: Services = Depends(get_services),
    ):
        return await svc.ledger.adjust(product_id, req.mode, req.quantity, req.reason, actor)

    # ── Query Endpoints (read side) ──────────────

    @app.get("/queries/orders", response_model=list[Order])
    async def query_list_orders(
        status_filter: OrderStatus | None = Query(None, alias="status"),
        limit: int | None = Query(None, ge=1, le=500),
        actor: Actor = Depends(get_current_actor),
        svc: Services = Depends(get_services),
    ):
        """Customers see their orders, suppliers the orders addressed to them."""
        if actor.role is Role.CUSTOMER:
            return await svc.queries.list_by_customer(actor.id, status_filter, limit)
        if actor.role is Role.SUPPLIER:
            return await svc.queries.list_by_supplier(actor.id, status_filter, limit)
        return await svc.queries.list_all(status_filter, limit)

    @app.get("/queries/orders/{order_id}", response_model=Order)
    async def query_get_order(
        order_id: UUID,
        actor: Actor = Depends(get_current_actor),
        svc: Services = Depends(get_services),
    ):
        order = await svc.queries.get_by_id(order_id)
        authorize_read(order, actor)
        return order

    @app.get("/queries/orders/{order_id}/invoice", response_model=Invoice)
    async def query_invoice(
        order_id: UUID,
        actor: Actor = Depends(get_current_actor),
        svc: Services = Depends(get_services),
    ):
        return await svc.queries.invoice(order_id, actor)

    @app.get("/queries/suppliers/{supplier_id}/board", response_model=dict[str, list[Order]])
    async def query_supplier_board(
        supplier_id: str,
        actor: Actor = Depends(get_current_actor),
        svc: Services = Depends(get_services),
    ):
        if actor.role is not Role.ADMIN and not (actor.role is Role.SUPPLIER and actor.id == supplier_id):
            raise Forbidden("Only the supplier and admins can see this board")
        return await svc.queries.supplier_board(supplier_id)

    @app.get("/queries/inventory", response_model=list[StockLevel])
    async def query_list_stock(
        supplier_id: str | None = None,
        actor: Actor = Depends(get_current_actor),
        svc: Services = Depends(get_services),
    ):
        if actor.role is Role.SUPPLIER:
            supplier_id = actor.id
        return await svc.queries.list_stock(supplier_id)

    @app.get("/queries/inventory/{product_id}", response_model=StockLevel)
    async def query_get_stock(
        product_id: str,
        actor: Actor = Depends(get_current_actor),
        svc: Services = Depends(get_services),
    ):
        return await svc.ledger.get(product_id)

    @app.get("/queries/inventory/{product_id}/adjustments", response_model=list[StockAdjustment])
    async def query_adjustments(
        product_id: str,
        actor: Actor = Depends(get_current_actor),
        svc: Services = Depends(get_services),
    ):
        stock = await svc.ledger.get(product_id)
        if actor.role is not Role.ADMIN and not (
            actor.role is Role.SUPPLIER and actor.id == stock.supplier_id
        ):
            raise Forbidden("Only the supplier and admins can see adjustments")
        return await svc.store.list_adjustments(product_id)

    @app.websocket("/queries/orders/{order_id}/live")
    async def query_live_order(websocket: WebSocket, order_id: UUID, token: str | None = None):
        """Live tracking: the current document, then every new version."""
        svc: Services = websocket.app.state.services
        try:
            actor = decode_token(token, settings)
            authorize_read(await svc.queries.get_by_id(order_id), actor)
        except (InvalidToken, FulfillmentError) as exc:
            logger.info("Live tracking for %s refused: %s", order_id, exc)
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

        await websocket.accept()
        updates = svc.queries.subscribe(order_id)

        async def forward() -> None:
            async for order in updates:
                await websocket.send_text(order.model_dump_json())

        async def wait_for_disconnect() -> None:
            while (await websocket.receive())["type"] != "websocket.disconnect":
                pass

        # the client never sends anything; reading is how a hang-up is noticed
        sender = asyncio.create_task(forward())
        watcher = asyncio.create_task(wait_for_disconnect())
        try:
            done, _ = await asyncio.wait({sender, watcher}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sender, watcher):
                task.cancel()
            await asyncio.wait({sender, watcher})
            await updates.aclose()

        error = None if watcher in done else sender.exception()
        if watcher in done or isinstance(error, WebSocketDisconnect):
            logger.info("Live tracking for %s closed by client", order_id)
        elif error is not None:
            raise error
        else:
            logger.info("Live tracking for %s finished", order_id)
            await websocket.close()

    # ── Event Store ──────────────────────────────

    @app.get("/events/{order_id}")
    async def get_order_events(
        order_id: UUID,
        actor: Actor = Depends(get_current_actor),
        svc: Services = Depends(get_services),
    ):
        """Raw event log of one order."""
        authorize_read(await svc.queries.get_by_id(order_id), actor)
        return await svc.queries.history(order_id)

    # ── Admin ────────────────────────────────────

    @app.post("/admin/reconcile")
    async def admin_reconcile(
        repair: bool = False,
        actor: Actor = Depends(require_admin),
        svc: Services = Depends(get_services),
    ):
        divergences = await find_divergence(svc.store, repair=repair)
        logger.info("Reconciliation by %s: %d divergences (repair=%s)", actor.id, len(divergences), repair)
        return {"divergences": divergences, "repair": repair}

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "fulfillment-service"}

    return app


app = create_app()
