import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

import numpy as np
from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, HTTPException, UploadFile
from fastapi import Request as HttpRequest
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from pydantic import BaseModel, Field, EmailStr
from pydantic import ValidationError as SchemaError
from sklearn.cluster import KMeans

from assignment import AssignmentLayer
from community import CommunityBoard
from database import create_document, db, ensure_indexes, get_documents, object_id, serialize_doc, utcnow
from errors import NotFound, PlatformError, ValidationError
from integrations import (
    ContentModerator, ImageClassifier, LocalObjectStorage, ReverseGeocoder, discard_uploads, upload_many,
)
from inventory import InventoryLedger, occupancy
from lifecycle import RequestStore
from notifications import Notifier
import notifications
from points import PointsLedger
from schemas import (
    Actor, Agency, AgencyDocuments, Community, GeoPoint, ImageRef, InventoryLocation, PickupArea,
    PickupRequest, Product, User, Volunteer,
)
from security import (
    Token, authenticate, bootstrap_admin, email_taken, get_current_actor, get_password_hash,
    issue_token, require_role,
)
from workflow import RequestWorkflow, present
import settings

logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

# ------------------ Collaborators ------------------
storage = LocalObjectStorage()
geocoder = ReverseGeocoder()
classifier = ImageClassifier()
moderator = ContentModerator()
notifier = Notifier()


async def monthly_reset_loop(database):
    ledger = PointsLedger(database)
    while True:
        try:
            if await run_in_threadpool(ledger.reset_due):
                await run_in_threadpool(ledger.monthly_reset)
        except Exception:
            logger.exception("Monthly points reset failed")
        await asyncio.sleep(settings.MONTHLY_RESET_INTERVAL_SECONDS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    task = None
    if db is not None:
        ensure_indexes(db)
        bootstrap_admin(db, settings.ADMIN_EMAIL, settings.ADMIN_PASSWORD)
        CommunityBoard(db, moderator).sweep_expired()
        task = asyncio.create_task(monthly_reset_loop(db))
    yield
    if task is not None:
        task.cancel()


app = FastAPI(title="E-Waste Pickup Platform API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PlatformError)
async def platform_error_handler(request: HttpRequest, exc: PlatformError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "detail": exc.message})


# ------------------ Dependencies ------------------
def get_db():
    if db is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    return db


def get_storage():
    return storage


def get_geocoder():
    return geocoder


def get_classifier():
    return classifier


def get_moderator():
    return moderator


def get_notifier():
    return notifier


def get_workflow(database=Depends(get_db), storage=Depends(get_storage), geocoder=Depends(get_geocoder),
                 classifier=Depends(get_classifier)) -> RequestWorkflow:
    return RequestWorkflow(database, storage, geocoder, classifier)


def get_assignment(database=Depends(get_db)) -> AssignmentLayer:
    return AssignmentLayer(database, RequestStore(database))


def get_inventory(database=Depends(get_db)) -> InventoryLedger:
    return InventoryLedger(database)


def get_points(database=Depends(get_db)) -> PointsLedger:
    return PointsLedger(database)


def get_community(database=Depends(get_db), moderator=Depends(get_moderator)) -> CommunityBoard:
    return CommunityBoard(database, moderator)


def build(model, **data):
    try:
        return model(**data)
    except SchemaError as e:
        msg = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
        raise ValidationError(msg)


def dispatch(background_tasks: BackgroundTasks, notifier: Notifier, notices) -> None:
    for notice in notices:
        background_tasks.add_task(notifier.deliver, notice)


def public(doc):
    doc = serialize_doc(doc)
    if doc:
        doc.pop("password_hash", None)
    return doc


# ------------------ Public & Utility ------------------
@app.get("/")
def read_root():
    return {"message": "E-Waste Pickup Platform Backend Running"}


@app.get("/test")
def test_database():
    try:
        collections = get_db().list_collection_names()
        return {
            "backend": "✅ Running",
            "database": "✅ Connected",
            "collections": collections[:10]
        }
    except Exception as e:
        return {"backend": "✅ Running", "database": f"❌ {str(e)[:80]}"}


# ------------------ Auth ------------------
@app.post("/auth/register/user", response_model=Token)
def register_user(name: str = Form(...), email: str = Form(...), password: str = Form(..., min_length=6),
                  database=Depends(get_db)):
    if email_taken(database, email):
        raise HTTPException(status_code=400, detail="Email already registered")
    user = build(User, name=name, email=email, password_hash=get_password_hash(password))
    uid = create_document("user", user, database=database)
    return issue_token(Actor(id=uid, role="user"))


def save_agency(database, storage, fields: Dict[str, Any], files) -> str:
    refs = upload_many(storage, files)
    logo_ref, license_ref, pcb_ref = refs
    try:
        agency = Agency(
            **fields,
            logo=ImageRef(**logo_ref),
            documents=AgencyDocuments(trade_license=ImageRef(**license_ref), pcb_auth=ImageRef(**pcb_ref)),
        )
        return create_document("agency", agency, database=database)
    except Exception:
        discard_uploads(storage, refs)
        raise


@app.post("/auth/register/agency", response_model=Token)
async def register_agency(
    name: str = Form(...),
    email: str = Form(...),
    password: str = Form(..., min_length=6),
    agency_type: List[str] = Form(...),
    address: str = Form(...),
    region: str = Form(...),
    phone: str = Form(...),
    contact_person: str = Form(...),
    lat: float = Form(...),
    lng: float = Form(...),
    working_hours: str = Form(...),
    waste_types_handled: List[str] = Form(...),
    logo: UploadFile = File(...),
    trade_license: UploadFile = File(...),
    pcb_auth: UploadFile = File(...),
    database=Depends(get_db),
    storage=Depends(get_storage),
):
    if email_taken(database, email):
        raise HTTPException(status_code=400, detail="Email already registered")
    password_hash = await run_in_threadpool(get_password_hash, password)
    fields = dict(name=name, email=email, password_hash=password_hash, agency_type=agency_type,
                  address=address, region=region, phone=phone, contact_person=contact_person,
                  location={"lat": lat, "lng": lng}, working_hours=working_hours,
                  waste_types_handled=waste_types_handled)
    build(Agency, **fields)
    files = [(f.filename, await f.read()) for f in (logo, trade_license, pcb_auth)]
    aid = await run_in_threadpool(save_agency, database, storage, fields, files)
    return issue_token(Actor(id=aid, role="agency"))


@app.post("/auth/login", response_model=Token)
def login(form_data: OAuth2PasswordRequestForm = Depends(), database=Depends(get_db)):
    actor = authenticate(database, form_data.username, form_data.password)
    if actor is None:
        raise HTTPException(status_code=401, detail="Incorrect email or password")
    return issue_token(actor)


@app.get("/me")
def me(actor: Actor = Depends(get_current_actor), database=Depends(get_db)):
    doc = database[actor.role].find_one({"_id": object_id(actor.id, "Account")})
    if not doc:
        raise NotFound("Account not found")
    return {"role": actor.role, "profile": public(doc)}


class ProfileUpdate(BaseModel):
    phone: str = Field(..., pattern=r"^\d{10}$")
    address: str
    pin_code: str = Field(..., pattern=r"^\d{6}$")
    location: Optional[GeoPoint] = None


@app.post("/users/me/profile")
async def complete_profile(
    phone: str = Form(...),
    address: str = Form(...),
    pin_code: str = Form(...),
    lat: Optional[float] = Form(None),
    lng: Optional[float] = Form(None),
    profile_image: Optional[UploadFile] = File(None),
    actor: Actor = Depends(require_role(["user"])),
    database=Depends(get_db),
    storage=Depends(get_storage),
):
    location = {"lat": lat, "lng": lng} if lat is not None and lng is not None else None
    update = build(ProfileUpdate, phone=phone, address=address, pin_code=pin_code, location=location)
    data: Dict[str, Any] = update.model_dump()
    if profile_image is not None:
        ref = await run_in_threadpool(storage.upload, profile_image.filename, await profile_image.read())
        data["profile_pic"] = ref
    data["updated_at"] = utcnow()
    users = database["user"]
    result = await run_in_threadpool(users.update_one, {"_id": object_id(actor.id, "User")}, {"$set": data})
    if result.matched_count == 0:
        raise NotFound("User not found")
    return public(database["user"].find_one({"_id": object_id(actor.id)}))


# ------------------ Agencies ------------------
@app.get("/agencies")
def list_agencies(waste_type: Optional[str] = None, database=Depends(get_db)):
    filt: Dict[str, Any] = {"certification_status": "Certified"}
    if waste_type:
        filt["waste_types_handled"] = waste_type.lower()
    items = database["agency"].find(filt, {"name": 1, "region": 1, "waste_types_handled": 1, "location": 1})
    return [serialize_doc(a) for a in items]


class CertificationBody(BaseModel):
    status: Literal["Certified", "Uncertified"]


@app.patch("/admin/agencies/{agency_id}/certification")
def certify_agency(agency_id: str, body: CertificationBody, actor=Depends(require_role(["admin"])),
                   database=Depends(get_db)):
    result = database["agency"].update_one(
        {"_id": object_id(agency_id, "Agency")},
        {"$set": {"certification_status": body.status, "updated_at": utcnow()}},
    )
    if result.matched_count == 0:
        raise NotFound("Agency not found")
    return public(database["agency"].find_one({"_id": object_id(agency_id)}))


class InventorySetup(BaseModel):
    total_capacity: float = Field(..., ge=0)
    location: InventoryLocation


class InventoryResize(BaseModel):
    total_capacity: float = Field(..., ge=0)


def inventory_out(doc):
    out = serialize_doc(doc)
    out["occupancy"] = round(occupancy(doc), 4)
    return out


@app.post("/agencies/me/inventory")
def setup_inventory(body: InventorySetup, actor=Depends(require_role(["agency"])),
                    inventory: InventoryLedger = Depends(get_inventory)):
    return inventory_out(inventory.setup(actor.id, body.total_capacity, body.location))


@app.get("/agencies/me/inventory")
def get_inventory_view(actor=Depends(require_role(["agency"])), inventory: InventoryLedger = Depends(get_inventory)):
    return inventory_out(inventory.get(actor.id))


@app.patch("/agencies/me/inventory")
def resize_inventory(body: InventoryResize, actor=Depends(require_role(["agency"])),
                     inventory: InventoryLedger = Depends(get_inventory)):
    return inventory_out(inventory.resize(actor.id, body.total_capacity))


# ------------------ Volunteers ------------------
class VolunteerCreate(BaseModel):
    name: str
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: str
    address: str
    pickup_area: PickupArea


class VolunteerStatusBody(BaseModel):
    status: Literal["Active", "Inactive"]


@app.post("/agencies/me/volunteers")
def add_volunteer(body: VolunteerCreate, actor=Depends(require_role(["agency"])), database=Depends(get_db),
                  assignment: AssignmentLayer = Depends(get_assignment)):
    if email_taken(database, body.email):
        raise HTTPException(status_code=400, detail="Email already registered")
    data = body.model_dump(exclude={"password"})
    volunteer = build(Volunteer, **data, password_hash=get_password_hash(body.password), agency_id=actor.id)
    return public(assignment.create_volunteer(actor.id, volunteer))


@app.get("/agencies/me/volunteers")
def list_volunteers(active_only: bool = False, actor=Depends(require_role(["agency"])), database=Depends(get_db),
                    assignment: AssignmentLayer = Depends(get_assignment)):
    if active_only:
        volunteers = assignment.active_volunteers(actor.id)
    else:
        volunteers = get_documents("volunteer", {"agency_id": actor.id}, database=database)
    out = []
    for v in volunteers:
        item = public(v)
        item["assigned_requests"] = [str(r["_id"]) for r in assignment.volunteer_requests(str(v["_id"]))]
        out.append(item)
    return out


@app.patch("/volunteers/{volunteer_id}/status")
def toggle_volunteer(volunteer_id: str, body: VolunteerStatusBody, actor=Depends(require_role(["agency"])),
                     assignment: AssignmentLayer = Depends(get_assignment)):
    return public(assignment.set_volunteer_status(volunteer_id, actor, body.status))


@app.delete("/volunteers/{volunteer_id}")
def delete_volunteer(volunteer_id: str, actor=Depends(require_role(["agency"])),
                     assignment: AssignmentLayer = Depends(get_assignment)):
    assignment.delete_volunteer(volunteer_id, actor)
    return {"deleted": True}


# ------------------ Pickup requests ------------------
@app.post("/requests")
async def create_request(
    agency_id: str = Form(...),
    waste_types: List[str] = Form(...),
    quantities: List[int] = Form(...),
    weight: float = Form(...),
    lat: float = Form(...),
    lng: float = Form(...),
    pickup_date: datetime = Form(...),
    contact_number: str = Form(...),
    pickup_address: Optional[str] = Form(None),
    special_instructions: Optional[str] = Form(None),
    images: List[UploadFile] = File(...),
    actor: Actor = Depends(require_role(["user"])),
    workflow: RequestWorkflow = Depends(get_workflow),
):
    payload = build(
        PickupRequest,
        agency_id=agency_id,
        waste_types=waste_types,
        quantities=quantities,
        weight=weight,
        pickup_address=pickup_address or None,
        pickup_location={"lat": lat, "lng": lng},
        pickup_date=pickup_date,
        contact_number=contact_number,
        special_instructions=special_instructions or None,
    )
    files = [(f.filename, await f.read()) for f in images]
    doc = await run_in_threadpool(workflow.create_request, actor.id, payload, files)
    return serialize_doc(present(doc, actor))


@app.get("/requests")
def list_requests(include_rejected: bool = False, status: Optional[str] = None,
                  actor: Actor = Depends(get_current_actor),
                  assignment: AssignmentLayer = Depends(get_assignment)):
    if actor.role == "user":
        docs = assignment.user_requests(actor.id, include_rejected=include_rejected)
    elif actor.role == "agency":
        docs = assignment.agency_requests(actor.id, include_rejected=include_rejected, status=status)
    elif actor.role == "volunteer":
        docs = assignment.volunteer_requests(actor.id)
    else:
        filt = {"status": status} if status else {}
        docs = assignment.store.find(filt)
    return {"items": [serialize_doc(present(d, actor)) for d in docs]}


@app.get("/requests/{request_id}")
def get_request(request_id: str, actor: Actor = Depends(get_current_actor),
                workflow: RequestWorkflow = Depends(get_workflow)):
    return serialize_doc(present(workflow.get(request_id, actor), actor))


class NoteBody(BaseModel):
    notes: Optional[str] = None


class RejectBody(BaseModel):
    reason: Optional[str] = None


class AssignVolunteerBody(BaseModel):
    volunteer_id: str
    notes: Optional[str] = None


class MilestoneUpdate(BaseModel):
    notes: Optional[str] = None
    otp: Optional[str] = None
    location: Optional[GeoPoint] = None
    details: Optional[Dict[str, Any]] = None


@app.post("/requests/{request_id}/accept")
def accept_request(request_id: str, background_tasks: BackgroundTasks, body: Optional[NoteBody] = None,
                   actor=Depends(require_role(["agency"])), workflow: RequestWorkflow = Depends(get_workflow),
                   notifier: Notifier = Depends(get_notifier)):
    result = workflow.accept(request_id, actor, notes=body.notes if body else None)
    dispatch(background_tasks, notifier, result.notices)
    return serialize_doc(present(result.request, actor))


@app.post("/requests/{request_id}/reject")
def reject_request(request_id: str, background_tasks: BackgroundTasks, body: Optional[RejectBody] = None,
                   actor=Depends(require_role(["agency"])), workflow: RequestWorkflow = Depends(get_workflow),
                   notifier: Notifier = Depends(get_notifier)):
    result = workflow.reject(request_id, actor, reason=body.reason if body else None)
    dispatch(background_tasks, notifier, result.notices)
    return serialize_doc(present(result.request, actor))


@app.post("/requests/{request_id}/assign-volunteer")
def assign_volunteer(request_id: str, body: AssignVolunteerBody, background_tasks: BackgroundTasks,
                     actor=Depends(require_role(["agency"])),
                     assignment: AssignmentLayer = Depends(get_assignment),
                     notifier: Notifier = Depends(get_notifier)):
    doc, volunteer = assignment.assign_volunteer(request_id, body.volunteer_id, actor, notes=body.notes)
    dispatch(background_tasks, notifier, notifications.volunteer_assigned(doc, volunteer))
    return serialize_doc(present(doc, actor))


@app.post("/requests/{request_id}/milestones/{milestone}")
def update_milestone(request_id: str, milestone: str, background_tasks: BackgroundTasks,
                     body: Optional[MilestoneUpdate] = None,
                     actor: Actor = Depends(require_role(["agency", "volunteer"])),
                     workflow: RequestWorkflow = Depends(get_workflow),
                     notifier: Notifier = Depends(get_notifier)):
    body = body or MilestoneUpdate()
    result = workflow.advance(request_id, milestone, actor, notes=body.notes, otp=body.otp,
                              location=body.location, details=body.details)
    dispatch(background_tasks, notifier, result.notices)
    return serialize_doc(present(result.request, actor))


@app.delete("/requests/{request_id}")
def cancel_request(request_id: str, background_tasks: BackgroundTasks, actor=Depends(require_role(["user"])),
                   workflow: RequestWorkflow = Depends(get_workflow), notifier: Notifier = Depends(get_notifier)):
    result = workflow.cancel(request_id, actor)
    dispatch(background_tasks, notifier, result.notices)
    return {"deleted": True, "id": str(result.request["_id"])}


# ------------------ Rewards ------------------
@app.get("/leaderboard")
def leaderboard(limit: int = 10, points: PointsLedger = Depends(get_points)):
    return {"items": [serialize_doc(u) for u in points.leaderboard(limit)]}


@app.get("/users/me/rank")
def my_rank(actor=Depends(require_role(["user"])), points: PointsLedger = Depends(get_points)):
    return {"rank": points.rank_of(actor.id)}


@app.post("/admin/points/monthly-reset")
def run_monthly_reset(actor=Depends(require_role(["admin"])), points: PointsLedger = Depends(get_points)):
    result = points.monthly_reset()
    if result is None:
        return {"ran": False}
    return {"ran": True, **result}


class ProductCreate(BaseModel):
    name: str
    description: Optional[str] = None
    points_required: int = Field(..., ge=1)
    stock: int = Field(0, ge=0)


class OrderStatusBody(BaseModel):
    status: Literal["Shipped", "Delivered"]


@app.post("/products")
def create_product(body: ProductCreate, actor=Depends(require_role(["agency"])), database=Depends(get_db)):
    product = Product(**body.model_dump(), agency_id=actor.id)
    pid = create_document("product", product, database=database)
    return serialize_doc(database["product"].find_one({"_id": object_id(pid)}))


@app.get("/products")
def list_products(in_stock: bool = False, database=Depends(get_db)):
    filt = {"stock": {"$gt": 0}} if in_stock else {}
    return {"items": [serialize_doc(p) for p in database["product"].find(filt).sort("points_required", 1)]}


@app.post("/products/{product_id}/redeem")
def redeem_product(product_id: str, actor=Depends(require_role(["user"])), points: PointsLedger = Depends(get_points)):
    return serialize_doc(points.redeem(actor.id, product_id))


@app.get("/orders")
def list_orders(actor=Depends(require_role(["user", "agency"])), database=Depends(get_db)):
    key = "user_id" if actor.role == "user" else "agency_id"
    return {"items": [serialize_doc(o) for o in database["order"].find({key: actor.id}).sort("created_at", -1)]}


@app.post("/orders/{order_id}/cancel")
def cancel_order(order_id: str, actor=Depends(require_role(["user"])), points: PointsLedger = Depends(get_points)):
    return serialize_doc(points.cancel_order(order_id, actor))


@app.patch("/orders/{order_id}/status")
def update_order(order_id: str, body: OrderStatusBody, actor=Depends(require_role(["agency"])),
                 points: PointsLedger = Depends(get_points)):
    return serialize_doc(points.update_order_status(order_id, actor, body.status))


# ------------------ Community ------------------
@app.post("/community")
def create_event(body: Community, actor: Actor = Depends(get_current_actor),
                 community: CommunityBoard = Depends(get_community)):
    return serialize_doc(community.create_event(actor, body))


@app.get("/community")
def list_events(community: CommunityBoard = Depends(get_community)):
    return {"items": [serialize_doc(e) for e in community.upcoming()]}


# ------------------ Analytics ------------------
@app.get("/analytics/summary")
def analytics_summary(actor=Depends(require_role(["admin", "agency"])), database=Depends(get_db)):
    match: Dict[str, Any] = {"agency_id": actor.id} if actor.role == "agency" else {}
    total = database["request"].count_documents(match)
    by_status = list(database["request"].aggregate([
        {"$match": match},
        {"$group": {"_id": "$status", "count": {"$sum": 1}}}
    ]))
    by_waste_type = list(database["request"].aggregate([
        {"$match": match},
        {"$unwind": "$waste_types"},
        {"$group": {"_id": "$waste_types", "count": {"$sum": 1}}}
    ]))
    return {"total": total, "by_status": by_status, "by_waste_type": by_waste_type}


@app.get("/analytics/hotspots")
def analytics_hotspots(k: int = 4, actor=Depends(require_role(["admin", "agency"])), database=Depends(get_db)):
    match: Dict[str, Any] = {"agency_id": actor.id} if actor.role == "agency" else {}
    points = list(database["request"].find(match, {"pickup_location": 1}))
    if not points:
        return {"centers": []}
    X = np.array([[p["pickup_location"]["lat"], p["pickup_location"]["lng"]] for p in points])
    k = max(1, min(k, len(X)))
    km = KMeans(n_clusters=k, n_init=10, random_state=42)
    km.fit(X)
    centers = km.cluster_centers_
    return {"centers": [{"lat": float(c[0]), "lng": float(c[1])} for c in centers]}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
