# storefront/app.py
from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .auth import GatewayAuthProvider, Principal, require_admin
from .cart import CartManager
from .catalog import CatalogReader
from .checkout import CheckoutEngine
from .config import Settings
from .db import Datastore
from .errors import InternalError, StorefrontError
from .logging import configure_logging
from .models import CartItemIn, CartItemPatch, CheckoutIn, OrderStatusPatch, ProductIn, ProductPatch, envelope
from .orders import OrderManager

logger = structlog.get_logger(__name__)

# Dependencies


def get_db(request: Request):
    return request.app.state.db


def current_user(request: Request) -> Principal:
    return request.app.state.auth.authenticate(request.headers)


def admin_user(user: Principal = Depends(current_user)) -> Principal:
    return require_admin(user)


def get_catalog(db=Depends(get_db)) -> CatalogReader:
    return CatalogReader(db)


def get_cart_manager(db=Depends(get_db)) -> CartManager:
    return CartManager(db)


def get_checkout(db=Depends(get_db)) -> CheckoutEngine:
    return CheckoutEngine(db)


def get_orders(db=Depends(get_db)) -> OrderManager:
    return OrderManager(db)


# Categories

category_router = APIRouter(prefix="/api/categories", tags=["categories"])


@category_router.get("")
def list_categories(catalog: CatalogReader = Depends(get_catalog)):
    categories = catalog.list_categories()
    return envelope("Categories found", categories, count=len(categories))


@category_router.get("/{category_id}")
def get_category(category_id: int, catalog: CatalogReader = Depends(get_catalog)):
    return envelope("Category found", catalog.get_category(category_id))


@category_router.get("/{slug}/products")
def list_category_products(slug: str, catalog: CatalogReader = Depends(get_catalog)):
    products = catalog.list_category_products(slug)
    return envelope(f"Products for category {slug} found", products, count=len(products))


# Products

product_router = APIRouter(prefix="/api/products", tags=["products"])


@product_router.get("")
def list_products(
    category: str = None,
    sport: str = None,
    team: str = None,
    brand: str = None,
    min_price: float = None,
    max_price: float = None,
    search: str = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    catalog: CatalogReader = Depends(get_catalog),
):
    products, pagination = catalog.list_products(
        category=category,
        sport=sport,
        team=team,
        brand=brand,
        min_price=min_price,
        max_price=max_price,
        search=search,
        page=page,
        limit=limit,
    )
    return envelope("Products found", products, pagination=pagination)


@product_router.get("/{product_id}")
def get_product(product_id: int, catalog: CatalogReader = Depends(get_catalog)):
    return envelope("Product found", catalog.get_product(product_id))


@product_router.post("", status_code=201)
def create_product(body: ProductIn, _: Principal = Depends(admin_user), catalog: CatalogReader = Depends(get_catalog)):
    return envelope("Product created", catalog.create_product(body.model_dump(exclude_none=True)))


@product_router.put("/{product_id}")
def update_product(
    product_id: int,
    body: ProductPatch,
    _: Principal = Depends(admin_user),
    catalog: CatalogReader = Depends(get_catalog),
):
    return envelope("Product updated", catalog.update_product(product_id, body.model_dump()))


@product_router.delete("/{product_id}")
def delete_product(product_id: int, _: Principal = Depends(admin_user), catalog: CatalogReader = Depends(get_catalog)):
    catalog.deactivate_product(product_id)
    return envelope("Product removed")


# Cart, checkout & orders

order_router = APIRouter(prefix="/api/orders", tags=["orders"])


@order_router.get("/cart")
def get_cart(user: Principal = Depends(current_user), cart: CartManager = Depends(get_cart_manager)):
    return envelope("Cart found", cart.get_cart(user.user_id))


@order_router.post("/cart/add", status_code=201)
def add_to_cart(body: CartItemIn, user: Principal = Depends(current_user), cart: CartManager = Depends(get_cart_manager)):
    item = cart.add_item(user.user_id, body.product_id, body.size, body.quantity)
    return envelope("Product added to cart", item)


@order_router.put("/cart/{item_id}")
def update_cart_item(
    item_id: int,
    body: CartItemPatch,
    user: Principal = Depends(current_user),
    cart: CartManager = Depends(get_cart_manager),
):
    return envelope("Quantity updated", cart.update_item(user.user_id, item_id, body.quantity))


@order_router.delete("/cart/{item_id}")
def remove_cart_item(item_id: int, user: Principal = Depends(current_user), cart: CartManager = Depends(get_cart_manager)):
    cart.remove_item(user.user_id, item_id)
    return envelope("Item removed from cart")


@order_router.delete("/cart")
def clear_cart(user: Principal = Depends(current_user), cart: CartManager = Depends(get_cart_manager)):
    cart.clear_cart(user.user_id)
    return envelope("Cart cleared")


@order_router.post("/checkout", status_code=201)
def checkout(body: CheckoutIn, user: Principal = Depends(current_user), engine: CheckoutEngine = Depends(get_checkout)):
    result = engine.checkout(user.user_id, body.payment_method, body.shipping_address, body.notes)
    return envelope("Order created", result)


@order_router.get("")
def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: Principal = Depends(current_user),
    orders: OrderManager = Depends(get_orders),
):
    rows, pagination = orders.list_orders(user.user_id, page, limit)
    return envelope("Orders found", rows, pagination=pagination)


@order_router.get("/admin/all")
def list_all_orders(
    status: str = None,
    payment_status: str = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    _: Principal = Depends(admin_user),
    orders: OrderManager = Depends(get_orders),
):
    rows, pagination = orders.list_all_orders(status=status, payment_status=payment_status, page=page, limit=limit)
    return envelope("Orders found", rows, pagination=pagination)


@order_router.get("/{order_id}")
def get_order(order_id: int, user: Principal = Depends(current_user), orders: OrderManager = Depends(get_orders)):
    return envelope("Order found", orders.get_order(user.user_id, order_id))


@order_router.put("/{order_id}/status")
def update_order_status(
    order_id: int,
    body: OrderStatusPatch,
    _: Principal = Depends(admin_user),
    orders: OrderManager = Depends(get_orders),
):
    updated = orders.update_status(
        order_id,
        status=body.status,
        payment_status=body.payment_status,
        tracking_code=body.tracking_code,
    )
    return envelope("Order status updated", updated)


# Health


health_router = APIRouter(tags=["health"])


@health_router.get("/health")
def health(request: Request):
    try:
        db_ok = request.app.state.db.ping()
    except Exception as e:
        logger.warning("health check failed", error=str(e))
        return JSONResponse(status_code=503, content={"status": "DEGRADED", "db_ok": False})
    return {"status": "OK", "db_ok": db_ok, "timestamp": datetime.now(timezone.utc).isoformat()}


# Errors


def _register_error_handlers(app: FastAPI, settings: Settings):
    @app.exception_handler(StorefrontError)
    async def storefront_error(request: Request, exc: StorefrontError):
        body = {"success": False, "message": exc.message}
        if isinstance(exc, InternalError) and settings.debug and exc.__cause__ is not None:
            body["error"] = str(exc.__cause__)
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"success": False, "message": "Invalid request", "error": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        message = exc.detail if exc.status_code != 404 else f"Route {request.url.path} does not exist"
        return JSONResponse(status_code=exc.status_code, content={"success": False, "message": message})

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.exception("unhandled error", path=request.url.path, method=request.method)
        body = {"success": False, "message": "Internal server error"}
        if settings.debug:
            body["error"] = str(exc)
        return JSONResponse(status_code=500, content=body)


def create_app(settings: Settings = None, datastore=None, auth=None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings)

    app = FastAPI(title="Storefront API", version="1.0.0")
    app.state.settings = settings
    app.state.db = datastore or Datastore.from_settings(settings)
    app.state.auth = auth or GatewayAuthProvider()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    def startup():
        app.state.db.open()

    @app.on_event("shutdown")
    def shutdown():
        app.state.db.close()

    _register_error_handlers(app, settings)
    app.include_router(category_router)
    app.include_router(product_router)
    app.include_router(order_router)
    app.include_router(health_router)
    return app


app = create_app()
