from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError
import structlog

import cart as cart_service
import orders as order_service
from auth import Identity, create_token, get_current_user, hash_password, require_role, verify_password
from database import Mongo, create_document, get_db, get_documents, parse_object_id, serialize_doc, utcnow
from errors import Conflict, NotFound, ServiceUnavailable, ValidationFailed, install_error_handlers
from logs import configure_logging
from schemas import OrderStatus, Product as ProductSchema, Role, User as UserSchema
from settings import Settings, get_settings

logger = structlog.get_logger(__name__)

PUBLIC_USER_FIELDS = {"password_hash": 0}


# ----------------------- Models -----------------------
class SignupBody(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=1)
    phone: str = ""
    address: str = ""
    role: Role


class LoginBody(BaseModel):
    email: EmailStr
    password: str


class ProfileUpdateBody(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    phone: Optional[str] = None
    address: Optional[str] = None


class ProductCreateBody(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)
    image_url: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1)
    stock: int = Field(..., ge=0)


class ProductUpdateBody(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = Field(None, min_length=1)
    price: Optional[float] = Field(None, ge=0)
    image_url: Optional[str] = Field(None, min_length=1)
    category: Optional[str] = Field(None, min_length=1)
    stock: Optional[int] = Field(None, ge=0)


class AddToCartBody(BaseModel):
    product_id: Optional[str] = None
    quantity: int = Field(1, ge=1)


class CartUpdateBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    item_id: str = Field(..., alias="itemId")
    quantity: int


class CartRemoveBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    item_id: str = Field(..., alias="itemId")


class PlaceOrderItem(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    # display fields sent by the client; checkout re-reads them from the product
    name: Optional[str] = None
    price: Optional[float] = None
    image_url: Optional[str] = None


class PlaceOrderBody(BaseModel):
    total_amount: Optional[float] = None
    items: List[PlaceOrderItem] = []


class StatusBody(BaseModel):
    status: OrderStatus


def app_settings(request: Request) -> Settings:
    return request.app.state.settings


router = APIRouter()


# ----------------------- Health -----------------------
@router.get("/")
def root():
    return {"success": True, "message": "E-commerce API running"}


@router.get("/test")
def test_database(request: Request):
    mongo: Mongo = request.app.state.mongo
    if not mongo.ping():
        raise ServiceUnavailable()
    return {
        "backend": "running",
        "database": "connected",
        "database_name": mongo.name,
        "collections": mongo.db.list_collection_names()[:10],
    }


# ----------------------- Auth -----------------------
@router.post("/signup", status_code=201)
def signup(body: SignupBody, db: Database = Depends(get_db), settings: Settings = Depends(app_settings)):
    if db["user"].find_one({"email": body.email}):
        raise Conflict("Email already registered")
    user = UserSchema(
        name=body.name,
        email=body.email,
        password_hash=hash_password(body.password),
        phone=body.phone,
        address=body.address,
        role=body.role,
    )
    try:
        user_id = create_document(db, "user", user)
    except DuplicateKeyError:
        raise Conflict("Email already registered")
    logger.info("user_signed_up", user_id=user_id, role=body.role.value)
    token = create_token(user_id, body.role.value, settings)
    return {
        "success": True,
        "message": "User registered successfully!",
        "token": token,
        "user": {"id": user_id, "name": body.name, "email": body.email, "role": body.role.value},
    }


@router.post("/login")
def login(body: LoginBody, db: Database = Depends(get_db), settings: Settings = Depends(app_settings)):
    user = db["user"].find_one({"email": body.email})
    if not user or not verify_password(body.password, user.get("password_hash")):
        logger.info("login_rejected")
        raise ValidationFailed("Invalid credentials")
    user_id = str(user["_id"])
    role = user.get("role") or Role.customer.value
    logger.info("user_logged_in", user_id=user_id)
    return {
        "success": True,
        "message": "Login successful",
        "token": create_token(user_id, role, settings),
        "id": user_id,
        "role": role,
        "name": user.get("name"),
        "email": user.get("email"),
        "phone": user.get("phone") or "",
        "address": user.get("address") or "",
    }


# ----------------------- Profile -----------------------
def _own_profile_id(profile_id: str, user: Identity):
    oid = parse_object_id(profile_id, "Invalid user ID")
    if oid != user.oid:
        raise NotFound("User not found")
    return oid


@router.get("/profile/{profile_id}")
def get_profile(profile_id: str, user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    oid = _own_profile_id(profile_id, user)
    doc = db["user"].find_one({"_id": oid}, PUBLIC_USER_FIELDS)
    if not doc:
        raise NotFound("User not found")
    return serialize_doc(doc)


@router.put("/profile/{profile_id}")
def update_profile(profile_id: str, body: ProfileUpdateBody, user: Identity = Depends(get_current_user),
                   db: Database = Depends(get_db)):
    oid = _own_profile_id(profile_id, user)
    update = body.model_dump(exclude_none=True)
    update["updated_at"] = utcnow()
    res = db["user"].update_one({"_id": oid}, {"$set": update})
    if res.matched_count == 0:
        raise NotFound("User not found")
    logger.info("profile_updated", user_id=user.user_id, fields=sorted(update))
    return {"success": True, "message": "Profile updated successfully!"}


# ----------------------- Products -----------------------
@router.get("/products")
def list_products(seller_id: Optional[str] = None, category: Optional[str] = None,
                  db: Database = Depends(get_db)):
    filt = {}
    if seller_id:
        filt["seller_id"] = parse_object_id(seller_id, "Invalid seller ID")
    if category:
        filt["category"] = category
    return [serialize_doc(p) for p in get_documents(db, "product", filt)]


@router.get("/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    item = db["product"].find_one({"_id": parse_object_id(product_id, "Invalid product ID")})
    if not item:
        raise NotFound("Product not found")
    return serialize_doc(item)


@router.post("/add-product", status_code=201)
def add_product(body: ProductCreateBody, user: Identity = Depends(require_role(Role.shopkeeper)),
                db: Database = Depends(get_db)):
    product = ProductSchema(**body.model_dump(), seller_id=user.oid)
    pid = create_document(db, "product", product)
    logger.info("product_added", product_id=pid, seller_id=user.user_id)
    return {"success": True, "message": "Product added successfully", "id": pid}


@router.put("/update-product/{product_id}")
def update_product(product_id: str, body: ProductUpdateBody,
                   user: Identity = Depends(require_role(Role.shopkeeper)), db: Database = Depends(get_db)):
    oid = parse_object_id(product_id, "Invalid product ID")
    update = body.model_dump(exclude_none=True)
    update["updated_at"] = utcnow()
    res = db["product"].update_one({"_id": oid, "seller_id": user.oid}, {"$set": update})
    if res.matched_count == 0:
        raise NotFound("Product not found or not owned")
    logger.info("product_updated", product_id=product_id, fields=sorted(update))
    return {"success": True, "message": "Product updated successfully!"}


@router.delete("/delete-product/{product_id}")
def delete_product(product_id: str, user: Identity = Depends(require_role(Role.shopkeeper)),
                   db: Database = Depends(get_db)):
    oid = parse_object_id(product_id, "Invalid product ID")
    res = db["product"].delete_one({"_id": oid, "seller_id": user.oid})
    if res.deleted_count == 0:
        raise NotFound("Product not found or not owned")
    logger.info("product_deleted", product_id=product_id, seller_id=user.user_id)
    return {"success": True, "message": "Product deleted successfully!"}


# ----------------------- Cart -----------------------
@router.post("/add-to-cart")
def add_to_cart(body: AddToCartBody, background_tasks: BackgroundTasks,
                user: Identity = Depends(get_current_user), db: Database = Depends(get_db),
                settings: Settings = Depends(app_settings)):
    product_id = parse_object_id(body.product_id, "Invalid product ID")
    lines, stale = cart_service.add_item(db, user.oid, product_id, body.quantity, settings.cart_add_retries)
    if stale:
        background_tasks.add_task(cart_service.prune_stale_lines, db, user.oid, stale)
    return {"success": True, "message": "Added to cart!", "cart": lines, **cart_service.totals(lines)}


@router.get("/cart")
def get_cart(background_tasks: BackgroundTasks, user: Identity = Depends(get_current_user),
             db: Database = Depends(get_db)):
    lines, stale = cart_service.get_cart(db, user.oid)
    if stale:
        background_tasks.add_task(cart_service.prune_stale_lines, db, user.oid, stale)
    return lines


@router.put("/cart/update")
def update_cart_line(body: CartUpdateBody, user: Identity = Depends(get_current_user),
                     db: Database = Depends(get_db)):
    line_id = parse_object_id(body.item_id, "Invalid item ID")
    cart_service.update_quantity(db, user.oid, line_id, body.quantity)
    return {"success": True}


@router.delete("/cart/item")
def remove_cart_line(body: CartRemoveBody, user: Identity = Depends(get_current_user),
                     db: Database = Depends(get_db)):
    line_id = parse_object_id(body.item_id, "Invalid item ID")
    cart_service.remove_item(db, user.oid, line_id)
    return {"success": True}


# ----------------------- Orders -----------------------
@router.post("/place-order")
def place_order(body: PlaceOrderBody, user: Identity = Depends(get_current_user),
                db: Database = Depends(get_db)):
    items = [(parse_object_id(i.product_id, "Invalid product ID"), i.quantity) for i in body.items]
    order_id = order_service.place_order(db, user.oid, items)
    return {"success": True, "message": "Order placed successfully!", "orderId": order_id}


@router.get("/orders")
def seller_orders(user: Identity = Depends(require_role(Role.shopkeeper)), db: Database = Depends(get_db)):
    return order_service.list_seller_orders(db, user.oid)


def _order_oid(order_id: str):
    try:
        return parse_object_id(order_id)
    except ValidationFailed:
        raise NotFound("Order not found")


@router.get("/order/{order_id}")
def order_detail(order_id: str, user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    return order_service.get_order_detail(db, _order_oid(order_id), user)


@router.put("/update-order/{order_id}")
def update_order_status(order_id: str, body: StatusBody, user: Identity = Depends(get_current_user),
                        db: Database = Depends(get_db)):
    status = order_service.update_status(db, _order_oid(order_id), body.status, user)
    return {"success": True, "message": f"Order status updated to {status.value}"}


@router.delete("/delete-order/{order_id}")
def delete_order(order_id: str, user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    order_service.delete_order(db, _order_oid(order_id), user)
    return {"success": True, "message": "Order deleted successfully"}


@router.delete("/order-item/{item_id}")
def delete_order_item(item_id: str, user: Identity = Depends(get_current_user), db: Database = Depends(get_db)):
    try:
        line_id = parse_object_id(item_id)
    except ValidationFailed:
        raise NotFound("Order item not found")
    order_service.delete_order_item(db, line_id, user)
    return {"success": True, "message": "Item removed from order"}


def create_app(settings: Optional[Settings] = None, mongo: Optional[Mongo] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.log_json)
    mongo = mongo or Mongo(settings.database_url, settings.database_name, timeout_ms=settings.db_timeout_ms)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        app.state.mongo.close()

    app = FastAPI(title="E-commerce Backend", lifespan=lifespan)
    app.state.settings = settings
    app.state.mongo = mongo

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    install_error_handlers(app)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=get_settings().port)
