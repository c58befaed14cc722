from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr

from admin import ProductForm, slugify
from checkout import ShippingForm, resolve_actor
from config import get_settings
from errors import AuthenticationError, FormValidationError, PermissionDeniedError, StorefrontError
from identity import IdentityAdapter, TokenIdentityGateway
from leads import LeadForm
from logging_config import setup_logging
from schemas import Address, Category, ProductRecord, User
from services import Services, build_services

router = APIRouter()


# ---------- Dependencies ----------
def get_services(request: Request) -> Services:
    return request.app.state.services


def bearer_token(authorization: Optional[str] = Header(default=None, alias="Authorization")) -> Optional[str]:
    if authorization and authorization.startswith("Bearer "):
        return authorization.split(" ", 1)[1]
    return None


def session_id(x_session_id: str = Header(..., alias="X-Session-Id")) -> str:
    return x_session_id


async def get_identity(services: Services = Depends(get_services), token: Optional[str] = Depends(bearer_token)):
    adapter = IdentityAdapter(services.identity)
    await adapter.initialize(token)
    try:
        yield adapter
    finally:
        adapter.close()


def require_user(identity: IdentityAdapter = Depends(get_identity)) -> User:
    if identity.user is None:
        raise AuthenticationError("Unauthorized")
    return identity.user


def require_admin(user: User = Depends(require_user)) -> User:
    if user.role != "admin":
        raise PermissionDeniedError("Admin only")
    return user


# ---------- Request bodies ----------
class SignupPayload(BaseModel):
    name: str
    email: EmailStr
    password: str


class LoginPayload(BaseModel):
    email: EmailStr
    password: str


class ProfilePayload(BaseModel):
    name: str


class PasswordPayload(BaseModel):
    password: str


class CartItemPayload(BaseModel):
    product_id: str


class QuantityPayload(BaseModel):
    delta: int


class DrawerPayload(BaseModel):
    open: Optional[bool] = None


class StatusPayload(BaseModel):
    status: str


class LeadCodePayload(LeadForm):
    recaptcha_token: Optional[str] = None


class LeadSubmitPayload(LeadForm):
    handle: str
    code: str


# ---------- Health ----------
@router.get("/")
def read_root():
    return {"message": "Storefront API running"}


@router.get("/test")
def test_database(services: Services = Depends(get_services)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if services.settings.database_url else "❌ Not Set",
        "database_name": "✅ Set" if services.settings.database_name else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
        "email": "✅ Configured" if services.settings.email_configured else "❌ Not Configured",
    }
    info = services.persistence.describe()
    if "connection_status" in info:
        response["connection_status"] = info["connection_status"]
        response["collections"] = info.get("collections", [])
        response["database"] = "✅ Connected & Working" if info["connection_status"] == "Connected" else f"⚠️ {info['connection_status']}"
    else:
        response["database"] = "⚠️ Using in-memory storage"
    return response


# ---------- Auth ----------
def auth_response(identity: IdentityAdapter):
    return {"token": identity.token, "user": identity.user.model_dump()}


@router.post("/api/auth/signup")
async def signup(payload: SignupPayload, identity: IdentityAdapter = Depends(get_identity)):
    user, error = await identity.register(payload.name, payload.email, payload.password)
    if error:
        raise HTTPException(status_code=400, detail=error)
    return auth_response(identity)


@router.post("/api/auth/login")
async def login(payload: LoginPayload, identity: IdentityAdapter = Depends(get_identity)):
    user, error = await identity.login(payload.email, payload.password)
    if error:
        raise AuthenticationError(error)
    return auth_response(identity)


@router.post("/api/auth/logout")
async def logout(identity: IdentityAdapter = Depends(get_identity)):
    await identity.logout()
    return {"signed_out": True}


@router.get("/api/me")
def me(user: User = Depends(require_user)):
    return user


@router.patch("/api/me")
async def update_me(payload: ProfilePayload, identity: IdentityAdapter = Depends(get_identity)):
    if identity.user is None:
        raise AuthenticationError("Unauthorized")
    if not payload.name.strip():
        raise FormValidationError("Name is required")
    user, error = await identity.update_profile(payload.name.strip())
    if error:
        raise HTTPException(status_code=400, detail=error)
    return user


@router.post("/api/me/password")
async def change_password(payload: PasswordPayload, identity: IdentityAdapter = Depends(get_identity)):
    if identity.user is None:
        raise AuthenticationError("Unauthorized")
    ok, error = await identity.change_password(payload.password)
    if error:
        raise HTTPException(status_code=400, detail=error)
    return {"updated": ok}


@router.get("/api/me/addresses")
async def my_addresses(user: User = Depends(require_user), services: Services = Depends(get_services)):
    return {"addresses": await services.address_book.get(user.id)}


@router.post("/api/me/addresses")
async def save_address(address: Address, user: User = Depends(require_user), services: Services = Depends(get_services)):
    addresses, error = await services.address_book.save(user.id, address)
    if error:
        raise HTTPException(status_code=502, detail="Failed to save address. Please try again.")
    return {"addresses": addresses}


@router.get("/api/orders")
async def my_orders(user: User = Depends(require_user), services: Services = Depends(get_services)):
    orders, error = await services.persistence.list_orders(user.id)
    if error:
        raise HTTPException(status_code=502, detail="Failed to load orders. Please try again.")
    return {"orders": orders}


# ---------- Catalog ----------
@router.get("/api/products")
async def list_products(category: Optional[str] = None, services: Services = Depends(get_services)):
    return {"products": await services.catalog.list_products(category)}


@router.get("/api/products/featured")
async def featured_products(services: Services = Depends(get_services)):
    return {"products": await services.catalog.list_featured()}


@router.get("/api/products/{slug}")
async def get_product(slug: str, services: Services = Depends(get_services)):
    product = await services.catalog.get_product_by_slug(slug)
    if product is None:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@router.get("/api/categories")
async def list_categories(services: Services = Depends(get_services)):
    return {"categories": await services.catalog.list_categories()}


# ---------- Cart ----------
@router.get("/api/cart")
def get_cart(sid: str = Depends(session_id), services: Services = Depends(get_services)):
    return services.carts.get(sid).snapshot()


@router.post("/api/cart/items")
async def add_to_cart(payload: CartItemPayload, sid: str = Depends(session_id), services: Services = Depends(get_services)):
    product = await services.catalog.get_product(payload.product_id)
    if product is None:
        raise HTTPException(status_code=404, detail="Product not found")
    cart = services.carts.get(sid)
    cart.add(product)
    return cart.snapshot()


@router.patch("/api/cart/items/{product_id}")
def update_cart_item(product_id: str, payload: QuantityPayload, sid: str = Depends(session_id), services: Services = Depends(get_services)):
    cart = services.carts.get(sid)
    cart.update_quantity(product_id, payload.delta)
    return cart.snapshot()


@router.delete("/api/cart/items/{product_id}")
def remove_cart_item(product_id: str, sid: str = Depends(session_id), services: Services = Depends(get_services)):
    cart = services.carts.get(sid)
    cart.remove(product_id)
    return cart.snapshot()


@router.delete("/api/cart")
def clear_cart(sid: str = Depends(session_id), services: Services = Depends(get_services)):
    cart = services.carts.get(sid)
    cart.clear()
    return cart.snapshot()


@router.post("/api/cart/drawer")
def set_drawer(payload: DrawerPayload, sid: str = Depends(session_id), services: Services = Depends(get_services)):
    cart = services.carts.get(sid)
    if payload.open is None:
        cart.toggle_drawer()
    elif payload.open:
        cart.open_drawer()
    else:
        cart.close_drawer()
    return cart.snapshot()


# ---------- Checkout ----------
@router.post("/api/checkout")
def start_checkout(sid: str = Depends(session_id), services: Services = Depends(get_services)):
    workflow = services.checkouts.start(sid, services.carts.get(sid))
    return workflow.view()


@router.get("/api/checkout/{checkout_id}")
def get_checkout(checkout_id: str, sid: str = Depends(session_id), services: Services = Depends(get_services)):
    return services.checkouts.get(checkout_id, sid).view()


@router.post("/api/checkout/{checkout_id}/shipping")
def submit_shipping(checkout_id: str, form: ShippingForm, sid: str = Depends(session_id), services: Services = Depends(get_services)):
    workflow = services.checkouts.get(checkout_id, sid)
    workflow.submit_shipping(form)
    return workflow.view()


@router.post("/api/checkout/{checkout_id}/back")
def back_to_shipping(checkout_id: str, sid: str = Depends(session_id), services: Services = Depends(get_services)):
    workflow = services.checkouts.get(checkout_id, sid)
    workflow.go_back()
    return workflow.view()


@router.post("/api/checkout/{checkout_id}/proof")
async def upload_proof(checkout_id: str, proof: UploadFile = File(...), sid: str = Depends(session_id), services: Services = Depends(get_services)):
    workflow = services.checkouts.get(checkout_id, sid)
    workflow.attach_proof(await proof.read(), proof.content_type, proof.filename or "")
    return workflow.view()


@router.post("/api/checkout/{checkout_id}/payment")
async def submit_payment(
    checkout_id: str,
    payment_method: str = Form(...),
    delivery_speed: str = Form("standard"),
    proof: Optional[UploadFile] = File(None),
    sid: str = Depends(session_id),
    services: Services = Depends(get_services),
    identity: IdentityAdapter = Depends(get_identity),
):
    workflow = services.checkouts.get(checkout_id, sid)
    if proof is not None:
        workflow.attach_proof(await proof.read(), proof.content_type, proof.filename or "")
    actor = resolve_actor(identity.user, workflow.shipping) if workflow.shipping else None
    await workflow.submit_payment(actor, payment_method, delivery_speed)
    return workflow.view()


# ---------- Leads ----------
@router.post("/api/leads/code")
async def request_lead_code(payload: LeadCodePayload, services: Services = Depends(get_services)):
    handle = await services.leads.request_code(payload, recaptcha_token=payload.recaptcha_token)
    return {"handle": handle}


@router.post("/api/leads")
async def submit_lead(payload: LeadSubmitPayload, services: Services = Depends(get_services)):
    lead = await services.leads.submit(payload, payload.handle, payload.code)
    return {"message": "Thank you for your feedback!", "lead_id": lead.id}


# ---------- Admin ----------
@router.get("/api/admin/products")
async def admin_products(admin: User = Depends(require_admin), services: Services = Depends(get_services)):
    return {"products": await services.admin.list_products()}


@router.post("/api/admin/products")
async def admin_create_product(form: ProductForm, admin: User = Depends(require_admin), services: Services = Depends(get_services)):
    return await services.admin.create_product(form)


@router.put("/api/admin/products/{product_id}")
async def admin_update_product(product_id: str, form: ProductForm, admin: User = Depends(require_admin), services: Services = Depends(get_services)):
    return await services.admin.update_product(product_id, form)


@router.delete("/api/admin/products/{product_id}")
async def admin_delete_product(product_id: str, confirm: bool = False, admin: User = Depends(require_admin), services: Services = Depends(get_services)):
    await services.admin.delete_product(product_id, confirmed=confirm)
    return {"deleted": True}


@router.get("/api/admin/orders")
async def admin_orders(admin: User = Depends(require_admin), services: Services = Depends(get_services)):
    return {"orders": await services.admin.list_orders()}


@router.patch("/api/admin/orders/{order_id}")
async def admin_order_status(order_id: str, payload: StatusPayload, admin: User = Depends(require_admin), services: Services = Depends(get_services)):
    await services.admin.update_order_status(order_id, payload.status)
    return {"updated": True}


@router.get("/api/admin/leads")
async def admin_leads(admin: User = Depends(require_admin), services: Services = Depends(get_services)):
    return {"leads": await services.admin.list_leads()}


# ---------- Seed sample catalog if empty ----------
SAMPLE_CATEGORIES: List[dict] = [
    {"name": "For Him", "slug": "for-him", "image_url": "https://images.pexels.com/photos/842539/pexels-photo-842539.jpeg?auto=compress&cs=tinysrgb&w=800"},
    {"name": "For Her", "slug": "for-her", "image_url": "https://images.pexels.com/photos/1460838/pexels-photo-1460838.jpeg?auto=compress&cs=tinysrgb&w=800"},
    {"name": "Anniversary", "slug": "anniversary", "image_url": "https://images.pexels.com/photos/1024960/pexels-photo-1024960.jpeg?auto=compress&cs=tinysrgb&w=800"},
    {"name": "Birthdays", "slug": "birthdays", "image_url": "https://images.pexels.com/photos/1405528/pexels-photo-1405528.jpeg?auto=compress&cs=tinysrgb&w=800"},
    {"name": "Home Decor", "slug": "for-home", "image_url": "https://images.pexels.com/photos/1090638/pexels-photo-1090638.jpeg?auto=compress&cs=tinysrgb&w=800"},
    {"name": "Diwali", "slug": "diwali", "image_url": "https://images.pexels.com/photos/6759530/pexels-photo-6759530.jpeg?auto=compress&cs=tinysrgb&w=800"},
]

SAMPLE_PRODUCTS: List[dict] = [
    {
        "name": "Custom Engraved Watch",
        "price": 2499,
        "category": "for-him",
        "images": ["https://images.pexels.com/photos/280250/pexels-photo-280250.jpeg?auto=compress&cs=tinysrgb&w=600"],
        "description": "A timeless piece with a personal touch.",
        "is_featured": True,
        "stock_quantity": 25,
    },
    {
        "name": "Monogrammed Leather Tote",
        "price": 3999,
        "category": "for-her",
        "images": ["https://images.pexels.com/photos/1152077/pexels-photo-1152077.jpeg?auto=compress&cs=tinysrgb&w=600"],
        "description": "Elegant and spacious for everyday use.",
        "is_featured": True,
        "stock_quantity": 15,
    },
    {
        "name": "Anniversary Photo Frame",
        "price": 1299,
        "category": "anniversary",
        "images": ["https://images.pexels.com/photos/1040900/pexels-photo-1040900.jpeg?auto=compress&cs=tinysrgb&w=600"],
        "description": "Capture your best moments together.",
        "stock_quantity": 40,
    },
    {
        "name": "Personalized Mug Set",
        "price": 899,
        "category": "birthdays",
        "images": ["https://images.pexels.com/photos/1320998/pexels-photo-1320998.jpeg?auto=compress&cs=tinysrgb&w=600"],
        "description": "Start the morning with a smile.",
        "stock_quantity": 60,
    },
    {
        "name": "Modern Ceramic Vase",
        "price": 2100,
        "category": "for-home",
        "images": ["https://images.pexels.com/photos/4207892/pexels-photo-4207892.jpeg?auto=compress&cs=tinysrgb&w=600"],
        "description": "Minimalist design to elevate any room.",
        "is_featured": True,
        "stock_quantity": 20,
    },
    {
        "name": "Handpainted Clay Diyas (Set of 6)",
        "price": 499,
        "category": "diwali",
        "images": ["https://images.pexels.com/photos/6759530/pexels-photo-6759530.jpeg?auto=compress&cs=tinysrgb&w=600"],
        "description": "Traditional handcrafted diyas to light up your festival.",
        "is_featured": True,
        "stock_quantity": 100,
    },
]


async def seed_catalog(services: Services) -> None:
    count, error = await services.persistence.count_products()
    if error or count:
        return
    for c in SAMPLE_CATEGORIES:
        await services.persistence.insert_category(Category(**c))
    for p in SAMPLE_PRODUCTS:
        await services.persistence.insert_product(ProductRecord(slug=slugify(p["name"]), **p))


# ---------- App ----------
@asynccontextmanager
async def lifespan(app: FastAPI):
    services = app.state.services
    await seed_catalog(services)
    settings = services.settings
    if settings.admin_email and settings.admin_password and isinstance(services.identity, TokenIdentityGateway):
        await services.identity.ensure_admin(settings.admin_email, settings.admin_password)
    yield
    await services.aclose()


def create_app(services: Optional[Services] = None) -> FastAPI:
    settings = services.settings if services else get_settings()
    setup_logging(settings.log_level)

    app = FastAPI(title="Storefront API", lifespan=lifespan)
    app.state.services = services or build_services(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StorefrontError)
    async def storefront_error(request: Request, exc: StorefrontError):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = get_settings().port
    uvicorn.run(app, host="0.0.0.0", port=port)
