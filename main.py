import logging
import os
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Depends, Query, Request, UploadFile, File, Form
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from pydantic import BaseModel, ValidationError
from jose import JWTError, jwt
from passlib.context import CryptContext
from pymongo.database import Database

from database import (
    ADMINS, AGENTS, REQUESTS, USERS, RequestStore, create_document, get_database, get_document,
    get_documents, serialize, to_object_id, utcnow,
)
from mapbox import MapboxClient, geocode_best_effort
from pickups import (
    CANCELLED, Conflict, InvalidStateTransition, NotFound, PickupError, Unauthorized,
    agent_pickups, available_for_agent, cancel, claim, complete,
)
from routing import RouteAdvisor, RouteAdvisoryUnavailable, RouteInputOutOfRange
from schemas import (
    Admin, AgentAddress, AccountStatusUpdate, CancelCommand, ClaimCommand, CollectionAgent,
    CollectionRequest, CollectionRequestCreate, CompleteCommand, GeoPoint, User,
)

SECRET_KEY = os.getenv("JWT_SECRET", "supersecretkey")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24 * 30
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")

logger = logging.getLogger("ewaste.api")

ROLE_COLLECTIONS = {"user": USERS, "collectionAgent": AGENTS, "admin": ADMINS}

ERROR_STATUS = {
    Conflict: 409,
    InvalidStateTransition: 400,
    Unauthorized: 403,
    NotFound: 404,
    RouteInputOutOfRange: 400,
    RouteAdvisoryUnavailable: 502,
}

# ------------------ Auth helpers ------------------
class Token(BaseModel):
    access_token: str
    token_type: str


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt


def get_current_user(request: Request, token: str = Depends(oauth2_scheme)):
    credentials_exception = HTTPException(status_code=401, detail="Could not validate credentials")
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        user_id: str = payload.get("sub")
        role: str = payload.get("role")
        if user_id is None or role not in ROLE_COLLECTIONS:
            raise credentials_exception
    except JWTError:
        raise credentials_exception

    doc = get_document(request.app.state.db, ROLE_COLLECTIONS[role], user_id)
    if doc is None:
        raise credentials_exception
    if doc.get("status") == "suspended":
        raise HTTPException(status_code=403, detail="Account is suspended")

    location = doc.get("location")
    return {
        "id": user_id,
        "role": role,
        "name": doc.get("name"),
        "email": doc.get("email"),
        "location": GeoPoint(**location) if location else None,
    }


def require_role(required: List[str]):
    def wrapper(user = Depends(get_current_user)):
        if user.get("role") not in required:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return user
    return wrapper


def validated(model, **fields):
    try:
        return model(**fields)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.errors(include_url=False, include_context=False))


def check_request_id(request_id: str) -> str:
    if to_object_id(request_id) is None:
        raise HTTPException(status_code=400, detail="Invalid request ID format.")
    return request_id

# ------------------ File Storage ------------------
STORAGE_DIR = os.getenv("STORAGE_DIR", "/tmp/uploads")


def save_upload_locally(file: UploadFile) -> str:
    os.makedirs(STORAGE_DIR, exist_ok=True)
    contents = file.file.read()
    name = f"{uuid.uuid4().hex}_{os.path.basename(file.filename or 'certificate')}"
    path = os.path.join(STORAGE_DIR, name)
    with open(path, "wb") as f:
        f.write(contents)
    return path


def login_for(db: Database, collection: str, role: str, email: str, password: str) -> dict:
    account = db[collection].find_one({"email": email.lower()})
    if not account or not verify_password(password, account.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Incorrect email or password")
    token = create_access_token({"sub": str(account["_id"]), "role": role})
    return {"access_token": token, "token_type": "bearer"}


def ensure_email_free(db: Database, collection: str, email: str):
    if db[collection].find_one({"email": email.lower()}):
        raise HTTPException(status_code=400, detail="Email already registered")


def parse_account_id(value: str):
    oid = to_object_id(value)
    if oid is None:
        raise HTTPException(status_code=400, detail="Invalid account ID format.")
    return oid


def set_account_status(db: Database, collection: str, account_id: str, status: str):
    result = db[collection].update_one(
        {"_id": parse_account_id(account_id)},
        {"$set": {"status": status, "updated_at": utcnow()}},
    )
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="Account not found")


def delete_account(db: Database, collection: str, account_id: str) -> dict:
    doc = db[collection].find_one_and_delete({"_id": parse_account_id(account_id)})
    if doc is None:
        raise HTTPException(status_code=404, detail="Account not found")
    return serialize(doc)


def check_password(password: str):
    if len(password) < 6:
        raise HTTPException(status_code=400, detail="Password must be at least 6 characters long.")


# ------------------ Application Factory ------------------
def create_app(
    db: Optional[Database] = None,
    mapbox_client: Optional[MapboxClient] = None,
) -> FastAPI:
    db = db if db is not None else get_database()
    store = RequestStore(db)
    mapbox = mapbox_client or MapboxClient()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store.ensure_indexes()
        yield

    app = FastAPI(title="E-Waste Pickup Platform API", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.db = db
    app.state.store = store
    app.state.mapbox = mapbox
    app.state.route_advisor = RouteAdvisor(store, mapbox)

    @app.exception_handler(PickupError)
    async def pickup_error_handler(request: Request, exc: PickupError):
        status_code = next((ERROR_STATUS[c] for c in type(exc).__mro__ if c in ERROR_STATUS), 500)
        return JSONResponse(
            status_code=status_code,
            content={"detail": exc.message, "error": exc.kind, "request_id": exc.request_id},
        )

    # ------------------ Public & Utility ------------------
    @app.get("/")
    def read_root():
        return {"message": "E-Waste Pickup Platform Backend Running"}

    @app.get("/test")
    def test_database():
        try:
            collections = db.list_collection_names()
            return {
                "backend": "✅ Running",
                "database": "✅ Connected",
                "collections": collections[:10]
            }
        except Exception as e:
            return {"backend": "✅ Running", "database": f"❌ {str(e)[:80]}"}

    # ------------------ Auth Endpoints (users) ------------------
    @app.post("/auth/register", response_model=Token)
    def register(name: str = Form(...), email: str = Form(...), password: str = Form(...),
                 phone_number: Optional[str] = Form(None)):
        check_password(password)
        ensure_email_free(db, USERS, email)
        user = validated(User, name=name, email=email.lower(), password_hash=get_password_hash(password),
                         role="user", phone_number=phone_number)
        uid = create_document(db, USERS, user)
        token = create_access_token({"sub": uid, "role": user.role})
        return {"access_token": token, "token_type": "bearer"}

    @app.post("/auth/login", response_model=Token)
    def login(form_data: OAuth2PasswordRequestForm = Depends()):
        return login_for(db, USERS, "user", form_data.username, form_data.password)

    # ------------------ Auth Endpoints (agents) ------------------
    @app.post("/agents/register", response_model=Token)
    def register_agent(
        name: str = Form(...),
        email: str = Form(...),
        phone_number: str = Form(...),
        street: str = Form(...),
        area: str = Form(...),
        city: str = Form(...),
        pincode: str = Form(...),
        password: str = Form(...),
        lat: Optional[float] = Form(None),
        lng: Optional[float] = Form(None),
        certificate: UploadFile = File(...),
    ):
        check_password(password)
        ensure_email_free(db, AGENTS, email)
        address = validated(AgentAddress, street=street, area=area, city=city, pincode=pincode)

        if lat is not None and lng is not None:
            location = validated(GeoPoint, lat=lat, lng=lng)
        else:
            location = geocode_best_effort(mapbox, f"{street}, {area}, {city}, {pincode}")
            if location is None:
                raise HTTPException(status_code=400, detail="Failed to verify address location. Please check address details.")

        agent = validated(
            CollectionAgent,
            name=name,
            email=email.lower(),
            phone_number=phone_number,
            password_hash=get_password_hash(password),
            address=address,
            location=location,
            certificate_path=save_upload_locally(certificate),
        )
        aid = create_document(db, AGENTS, agent)
        logger.info(f"Agent {agent.email} registered with id {aid}")
        token = create_access_token({"sub": aid, "role": "collectionAgent"})
        return {"access_token": token, "token_type": "bearer"}

    @app.post("/agents/login", response_model=Token)
    def login_agent(form_data: OAuth2PasswordRequestForm = Depends()):
        return login_for(db, AGENTS, "collectionAgent", form_data.username, form_data.password)

    # ------------------ Auth Endpoints (admins) ------------------
    @app.post("/admins/register", response_model=Token)
    def register_admin(name: str = Form(...), email: str = Form(...), password: str = Form(...)):
        check_password(password)
        ensure_email_free(db, ADMINS, email)
        admin = validated(Admin, name=name, email=email.lower(), password_hash=get_password_hash(password))
        aid = create_document(db, ADMINS, admin)
        token = create_access_token({"sub": aid, "role": "admin"})
        return {"access_token": token, "token_type": "bearer"}

    @app.post("/admins/login", response_model=Token)
    def login_admin(form_data: OAuth2PasswordRequestForm = Depends()):
        return login_for(db, ADMINS, "admin", form_data.username, form_data.password)

    # ------------------ Collection Requests ------------------
    @app.post("/requests", status_code=201)
    def create_request(body: CollectionRequestCreate, user=Depends(require_role(["user"]))):
        location = body.location or geocode_best_effort(
            mapbox, f"{body.street_address}, {body.city}, {body.zip_code}"
        )
        data = body.model_dump(exclude={"location"})
        req = CollectionRequest(user_id=user["id"], location=location, **data)
        rid = store.insert(req)
        logger.info(f"Collection request {rid} created by user {user['id']} (location: {location is not None})")
        return {"message": "Collection request created successfully", "request_id": rid}

    @app.get("/requests/mine")
    def list_my_requests(user=Depends(require_role(["user"]))):
        items = store.find({"user_id": user["id"]}, sort=[("created_at", -1)])
        return {"requests": [serialize(it) for it in items]}

    @app.get("/requests/{request_id}")
    def get_request(request_id: str, user=Depends(get_current_user)):
        check_request_id(request_id)
        doc = store.get(request_id)
        if doc is None:
            raise HTTPException(status_code=404, detail="Collection request not found")
        is_owner = doc.get("user_id") == user["id"]
        is_agent = user["id"] in (doc.get("assigned_agent_id"), doc.get("released_agent_id"))
        if not (is_owner or is_agent or user["role"] == "admin"):
            raise HTTPException(status_code=403, detail="Unauthorized access")
        return {"request": serialize(doc)}

    @app.put("/requests/{request_id}/cancel")
    def cancel_request(request_id: str, user=Depends(require_role(["user", "admin"]))):
        check_request_id(request_id)
        cmd = CancelCommand(request_id=request_id, actor_id=user["id"], actor_role=user["role"])
        updated = cancel(store, cmd)
        return {"message": "Collection request cancelled successfully", "request": serialize(updated)}

    # ------------------ Agent Pickups ------------------
    agent_only = require_role(["collectionAgent"])

    @app.get("/agent/pickups/available")
    def get_available_pickups(limit: Optional[int] = Query(None, ge=1), agent=Depends(agent_only)):
        items = available_for_agent(store, agent["location"], limit=limit)
        return {"requests": [serialize(it) for it in items]}

    @app.put("/agent/pickups/{request_id}/accept")
    def accept_pickup(request_id: str, agent=Depends(agent_only)):
        check_request_id(request_id)
        updated = claim(store, ClaimCommand(request_id=request_id, agent_id=agent["id"]))
        return {"message": "Pickup request accepted successfully.", "request": serialize(updated)}

    @app.get("/agent/pickups/status")
    def get_agent_pickups_by_status(status: Optional[str] = None, agent=Depends(agent_only)):
        valid = ["accepted", "completed", CANCELLED]
        if not status or status.lower() not in valid:
            raise HTTPException(status_code=400, detail=f"Invalid or missing status. Must be one of: {', '.join(valid)}")
        items = agent_pickups(store, agent["id"], status.lower())
        return {"requests": [serialize(it) for it in items]}

    @app.put("/agent/pickups/{request_id}/complete")
    def complete_pickup(request_id: str, agent=Depends(agent_only)):
        check_request_id(request_id)
        updated = complete(store, CompleteCommand(request_id=request_id, agent_id=agent["id"]))
        return {"message": "Pickup marked as completed successfully.", "request": serialize(updated)}

    @app.get("/agent/pickups/optimize-route")
    def optimize_route(agent=Depends(agent_only)):
        if agent["location"] is None:
            raise HTTPException(status_code=400, detail="Agent location not found. Cannot calculate route.")
        plan = app.state.route_advisor.optimize(agent["id"], agent["location"])
        return plan.model_dump()

    # ------------------ Admin ------------------
    admin_only = require_role(["admin"])

    @app.get("/admin/requests")
    def list_requests(status: Optional[str] = None, limit: Optional[int] = Query(None, ge=1), admin=Depends(admin_only)):
        filt = {"status": status} if status else {}
        items = get_documents(db, REQUESTS, filt, limit=limit)
        return {"requests": [serialize(it) for it in items]}

    @app.get("/admin/users")
    def list_users(admin=Depends(admin_only)):
        return {"users": [serialize(it) for it in get_documents(db, USERS)]}

    @app.get("/admin/agents")
    def list_agents(admin=Depends(admin_only)):
        return {"agents": [serialize(it) for it in get_documents(db, AGENTS)]}

    @app.put("/admin/users/{user_id}/status")
    def set_user_status(user_id: str, body: AccountStatusUpdate, admin=Depends(admin_only)):
        set_account_status(db, USERS, user_id, body.status)
        logger.info(f"Admin {admin['id']} set user {user_id} status to {body.status}")
        return {"ok": True, "status": body.status}

    @app.put("/admin/agents/{agent_id}/status")
    def set_agent_status(agent_id: str, body: AccountStatusUpdate, admin=Depends(admin_only)):
        set_account_status(db, AGENTS, agent_id, body.status)
        logger.info(f"Admin {admin['id']} set agent {agent_id} status to {body.status}")
        return {"ok": True, "status": body.status}

    @app.delete("/admin/users/{user_id}")
    def delete_user(user_id: str, admin=Depends(admin_only)):
        deleted = delete_account(db, USERS, user_id)
        logger.info(f"Admin {admin['id']} deleted user {user_id}")
        return {"message": "User deleted successfully.", "user": deleted}

    @app.delete("/admin/agents/{agent_id}")
    def delete_agent(agent_id: str, admin=Depends(admin_only)):
        deleted = delete_account(db, AGENTS, agent_id)
        path = deleted.get("certificate_path")
        if path:
            try:
                os.remove(path)
            except OSError as e:
                logger.warning(f"Could not delete agent certificate file {path}: {e}")
        logger.info(f"Admin {admin['id']} deleted agent {agent_id}")
        return {"message": "Collection agent deleted successfully.", "agent": deleted}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
