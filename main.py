import os
import asyncio
import logging
from datetime import date, datetime, timezone
from typing import Dict, List, Optional
from urllib.parse import urlencode

from fastapi import FastAPI, Request, Form
from starlette.middleware.sessions import SessionMiddleware
from starlette.responses import RedirectResponse
from fastapi.templating import Jinja2Templates
from fastapi.staticfiles import StaticFiles
from passlib.context import CryptContext
from pydantic import BaseModel
from starlette.status import HTTP_303_SEE_OTHER

from admin_controller import (
    AdminListController,
    AnimalsController,
    CollectionQuery,
    ControllerState,
    Write,
    call_with_deadline,
)
from errors import (
    NotFoundError,
    PartialFailureError,
    ResourceError,
    ShelterError,
    TransportError,
    ValidationError,
)
from filters import (
    ADOPTION_SEARCH,
    DONATION_SEARCH,
    MESSAGE_SEARCH,
    RULE_SORTS,
    VOLUNTEER_SEARCH,
    available_animals,
    dashboard_stats,
    donation_totals,
    filter_animals,
    filter_found_animals,
    filter_rules,
    jurisdictions,
    message_counts,
    parse_tags,
    published_rules,
    recent_activities,
    text_search,
    volunteer_split,
)
from reconciler import ADOPT_TABLE, RESCUED_TABLE, AnimalStatus, Source
from resource_client import InMemoryResourceClient, RemoteResourceClient
from supabase_client import SupabaseConfig, SupabaseResourceClient
from validators import (
    ADD_TARGETS,
    ADOPTION_FORM,
    ANIMAL_STATUSES,
    CONTACT_FORM,
    DONATION_FORM,
    GENDERS,
    GOV_RULE_FORM,
    LOST_FOUND_FORM,
    SPECIES,
    VOLUNTEER_FORM,
    validate_form,
)

logger = logging.getLogger("shelter")

APP_NAME = "Paws Haven Shelter"
BASE_DIR = os.path.dirname(os.path.abspath(__file__))

# --- Configuration ---
DATA_BACKEND = os.environ.get("DATA_BACKEND", "memory").lower()  # memory | supabase
STATE_FILE = os.environ.get("STATE_FILE", os.path.join("data", "state.json"))
REQUEST_TIMEOUT_SECONDS = float(os.environ.get("REQUEST_TIMEOUT_SECONDS", "8"))
FEED_COALESCE_SECONDS = float(os.environ.get("FEED_COALESCE_SECONDS", "0.2"))
ADMIN_EMAIL = os.environ.get("ADMIN_EMAIL", "admin@pawshaven.org").strip().lower()
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "admin")


# --- Admin accounts ---
class AdminAccount(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    password_hash: Optional[str] = None
    user_id: Optional[str] = None
    created_at: Optional[str] = None


# --- App Setup ---
app = FastAPI(title=APP_NAME)

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-please-change")
SESSION_MAX_AGE = int(os.environ.get("SESSION_MAX_AGE", "3600"))  # seconds
SESSION_HTTPS_ONLY = bool(int(os.environ.get("SESSION_HTTPS_ONLY", "0")))
SESSION_SAME_SITE = os.environ.get("SESSION_SAME_SITE", "lax")
app.add_middleware(
    SessionMiddleware,
    secret_key=SESSION_SECRET,
    max_age=SESSION_MAX_AGE,
    same_site=SESSION_SAME_SITE,
    https_only=SESSION_HTTPS_ONLY,
)

# Use pbkdf2_sha256 as the primary scheme to avoid bcrypt's 72-byte limit, but
# keep bcrypt for hashes created elsewhere.
pwd_context = CryptContext(
    schemes=["pbkdf2_sha256", "bcrypt"],
    deprecated="auto",
)

# Simple in-memory rate limiter for the admin login (per-IP)
LOGIN_ATTEMPTS: Dict[str, List[float]] = {}
LOGIN_WINDOW = int(os.environ.get("LOGIN_WINDOW", "300"))  # seconds
LOGIN_MAX_ATTEMPTS = int(os.environ.get("LOGIN_MAX_ATTEMPTS", "5"))
MIN_PASSWORD_LENGTH = 6

app.mount("/static", StaticFiles(directory=os.path.join(BASE_DIR, "static")), name="static")
templates = Jinja2Templates(directory=os.path.join(BASE_DIR, "templates"))


# --- Demo data for the in-memory backend ---
def seed_data() -> Dict[str, List[dict]]:
    return {
        ADOPT_TABLE: [
            {
                "name": "Bruno", "species": "Dog", "breed": "Indie", "age": 3, "gender": "Male",
                "rescue_date": "2024-01-12", "description": "Playful and gentle with children.",
                "health_status": "Vaccinated", "current_status": "Available", "image_url": None,
                "created_at": "2024-02-01T10:00:00+00:00",
            },
            {
                "name": "Coco", "species": "Rabbit", "breed": None, "age": 1, "gender": "Female",
                "rescue_date": "2024-03-02", "description": "Quiet and curious.",
                "health_status": "Healthy", "current_status": "Available", "image_url": None,
                "created_at": "2024-03-05T09:30:00+00:00",
            },
        ],
        RESCUED_TABLE: [
            {
                "name": "Bruno", "species": "Dog", "breed": "Indie", "age": 3, "gender": "Male",
                "rescue_date": "2024-01-12", "rescue_story": "Found near the railway station with a hurt paw.",
                "health_status": "Recovered", "current_status": "Available", "image_url": None,
                "created_at": "2024-01-12T08:00:00+00:00",
            },
            {
                "name": "Misty", "species": "Cat", "breed": "Domestic Shorthair", "age": 8, "gender": "Female",
                "rescue_date": "2024-02-20", "rescue_story": "Rescued from a flooded basement.",
                "health_status": "Under treatment", "current_status": "Under Care", "image_url": None,
                "created_at": "2024-02-20T12:00:00+00:00",
            },
        ],
        "gov_rules": [
            {
                "title": "Prevention of Cruelty to Animals Act, 1960",
                "summary": "Central law against unnecessary pain or suffering to animals.",
                "content": "Defines cruelty, sets penalties and establishes the Animal Welfare Board.",
                "pdf_url": None, "effective_date": "1960-12-26", "jurisdiction": "India (Central)",
                "tags": ["cruelty", "welfare"], "published": True, "published_at": "2024-01-01T00:00:00+00:00",
                "source_url": None, "created_by": None, "updated_at": None,
            },
            {
                "title": "Animal Birth Control Rules, 2023",
                "summary": "Sterilisation and vaccination programme for community dogs.",
                "content": None, "pdf_url": None, "effective_date": "2023-03-10",
                "jurisdiction": "India (Central)", "tags": ["stray dogs", "abc"], "published": False,
                "published_at": None, "source_url": None, "created_by": None, "updated_at": None,
            },
        ],
        "admins": [
            {"name": "Shelter Admin", "email": ADMIN_EMAIL, "password_hash": pwd_context.hash(ADMIN_PASSWORD)},
        ],
    }


def create_backend() -> RemoteResourceClient:
    if DATA_BACKEND == "supabase":
        return SupabaseResourceClient(SupabaseConfig.from_env())
    return InMemoryResourceClient(state_file=STATE_FILE or None, seed=seed_data())


backend = create_backend()


# --- Activity log (admin-visible) ---
if isinstance(backend, InMemoryResourceClient):
    logs: List[str] = backend.meta.setdefault("logs", [])
else:
    logs = []


def record_activity(message: str) -> None:
    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M")
    logs.append(f"[{stamp}] {message}")
    del logs[:-200]  # keep last 200 entries
    if isinstance(backend, InMemoryResourceClient):
        backend.save_state()


# --- Sections ---
def _section_options() -> dict:
    return {"timeout_seconds": REQUEST_TIMEOUT_SECONDS, "coalesce_seconds": FEED_COALESCE_SECONDS}


animals = AnimalsController(backend, **_section_options())
adoptions = AdminListController("adoptions", backend, [CollectionQuery("adoptions")], **_section_options())
donations = AdminListController("donations", backend, [CollectionQuery("donations")], **_section_options())
volunteers = AdminListController("volunteers", backend, [CollectionQuery("volunteers")], **_section_options())
messages = AdminListController("messages", backend, [CollectionQuery("contacts")], **_section_options())
lost_found = AdminListController(
    "lost_found",
    backend,
    [CollectionQuery("lost_found_submissions"), CollectionQuery("found_animals")],
    **_section_options(),
)
gov_rules = AdminListController("gov_rules", backend, [CollectionQuery("gov_rules")], **_section_options())

SECTIONS: Dict[str, AdminListController] = {
    "animals": animals,
    "adoptions": adoptions,
    "donations": donations,
    "volunteers": volunteers,
    "messages": messages,
    "lost_found": lost_found,
    "gov_rules": gov_rules,
}


def reset_sections() -> None:
    for section in SECTIONS.values():
        section.unmount()


async def refresh(*sections: AdminListController) -> Optional[str]:
    """Bring the sections up to date; returns the first load error, if any."""
    await asyncio.gather(*(s.ensure_fresh() for s in sections))
    for section in sections:
        if section.state == ControllerState.LOAD_ERROR and section.last_error is not None:
            return f"Could not load {section.name.replace('_', ' ')}: {section.last_error}"
    return None


async def submit_record(collection: str, record: dict) -> dict:
    return await call_with_deadline(collection, lambda: backend.insert(collection, record), REQUEST_TIMEOUT_SECONDS)


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# --- Utility Functions ---
STATUS_MESSAGES = {
    "submitted": "Thank you! Your submission has been received.",
    "adoption_submitted": "Your adoption application has been submitted. We will contact you soon.",
    "volunteer_submitted": "Thank you for applying to volunteer! We will be in touch.",
    "message_sent": "Your message has been sent. We will get back to you soon.",
    "donation_received": "Thank you for your donation!",
    "report_submitted": "Your report has been submitted for review.",
    "logged_out": "You have been logged out.",
    "profile_updated": "Profile updated.",
    "password_changed": "Your password has been changed successfully.",
}


def redirect(path: str, status: Optional[str] = None, error: Optional[str] = None) -> RedirectResponse:
    params = {}
    if status:
        params["status"] = status
    if error:
        params["error"] = error
    url = path + ("?" + urlencode(params) if params else "")
    return RedirectResponse(url=url, status_code=HTTP_303_SEE_OTHER)


def render(request: Request, template: str, context: dict, status_code: int = 200):
    status = request.query_params.get("status")
    page = {
        "request": request,
        "app_name": APP_NAME,
        "status_message": STATUS_MESSAGES.get(status, status) if status else None,
        "error": request.query_params.get("error"),
    }
    page.update(context)
    return templates.TemplateResponse(request, template, page, status_code=status_code)


def error_status(exc: ShelterError) -> int:
    if isinstance(exc, TransportError):
        return 503
    return 400


async def get_current_admin(request: Request) -> Optional[AdminAccount]:
    """Return the signed-in admin, or None.

    Implements a sliding session timeout: if the session's `last_active`
    timestamp is older than `SESSION_MAX_AGE`, the session is cleared.
    """
    admin_id = request.session.get("admin_id")
    if not admin_id:
        return None

    last_active = request.session.get("last_active")
    if last_active:
        try:
            la = datetime.fromisoformat(last_active)
            if la.tzinfo is None:
                la = la.replace(tzinfo=timezone.utc)
            age = (datetime.now(timezone.utc) - la).total_seconds()
            if age > SESSION_MAX_AGE:
                request.session.clear()
                return None
        except ValueError:
            request.session.clear()
            return None

    rows = await call_with_deadline(
        "admins",
        lambda: backend.select("admins", filters={"id": admin_id}),
        REQUEST_TIMEOUT_SECONDS,
        retries=1,
    )
    if not rows:
        request.session.clear()
        return None

    request.session["last_active"] = now_iso()
    return AdminAccount(**rows[0])


def admin_required() -> RedirectResponse:
    return redirect("/admin/login", error="Admin access required.")


async def run_action(path: str, success: str, action) -> RedirectResponse:
    """Await an admin action and redirect back with its outcome."""
    try:
        await action
    except ValidationError as exc:
        return redirect(path, error=str(exc))
    except PartialFailureError as exc:
        record_activity(f"PARTIAL FAILURE: {exc}")
        return redirect(path, error=str(exc))
    except ShelterError as exc:
        record_activity(f"Failed: {success} ({exc})")
        return redirect(path, error=str(exc))
    record_activity(success)
    return redirect(path, status=success)


@app.exception_handler(ResourceError)
async def backend_unavailable(request: Request, exc: ResourceError):
    logger.warning("Backend call failed for %s: %s", request.url.path, exc)
    return render(request, "error.html", {"message": str(exc)}, status_code=error_status(exc))


@app.on_event("startup")
async def _announce_backend():
    logger.info("%s starting with the %s backend", APP_NAME, DATA_BACKEND)


@app.on_event("shutdown")
async def _close_backend():
    reset_sections()
    await backend.close()


# --- 1. Public Pages ---

@app.get("/", tags=["Public Pages"])
async def read_root(request: Request):
    """Renders the home page."""
    load_error = await refresh(animals, gov_rules)
    available = available_animals(animals.entities)
    stats = {
        "available": len(available),
        "adopted": len([a for a in animals.entities if a.current_status == AnimalStatus.ADOPTED.value]),
        "rescued": len([a for a in animals.entities if a.record_id(Source.RESCUED)]),
    }
    latest_rules = filter_rules(published_rules(gov_rules.items), sort="date-desc")[:3]
    context = {
        "stats": stats,
        "featured": available[:3],
        "latest_rules": latest_rules,
        "load_error": load_error,
    }
    return render(request, "home.html", context)


@app.get("/adopt", tags=["Public Pages"])
async def read_adopt_page(request: Request):
    """Available animals with search, species and age filters."""
    load_error = await refresh(animals)
    search = request.query_params.get("search", "")
    species = request.query_params.get("species", "all")
    age_group = request.query_params.get("age", "all")
    available = available_animals(animals.entities)
    context = {
        "animals": filter_animals(available, search=search, species=species, age_group=age_group),
        "total": len(available),
        "filters": {"search": search, "species": species, "age": age_group},
        "species_options": SPECIES,
        "load_error": load_error,
    }
    return render(request, "adopt.html", context)


@app.get("/rescued", tags=["Public Pages"])
async def read_rescued_page(request: Request):
    load_error = await refresh(animals)
    rescued = [a for a in animals.entities if a.record_id(Source.RESCUED)]
    return render(request, "rescued.html", {"animals": rescued, "load_error": load_error})


@app.get("/adopt/apply", tags=["Public Pages"])
async def read_adoption_form(request: Request, animal: str = ""):
    await refresh(animals)
    try:
        entity = animals.get(animal)
    except NotFoundError:
        return redirect("/adopt", error="That animal could not be found.")
    return render(request, "adopt_apply.html", {"animal": entity, "form": {}, "errors": {}})


@app.post("/adopt/apply", status_code=HTTP_303_SEE_OTHER, tags=["Public Pages"])
async def submit_adoption(
    request: Request,
    animal: str = Form(...),
    name: str = Form(""),
    contact_no: str = Form(""),
    aadhaar_no: str = Form(""),
    email: str = Form(""),
    already_pet: str = Form(""),
    reason: str = Form(""),
):
    """Stores an adoption application for an available animal."""
    await refresh(animals)
    try:
        entity = animals.get(animal)
    except NotFoundError:
        return redirect("/adopt", error="That animal could not be found.")
    if entity.current_status != AnimalStatus.AVAILABLE.value:
        return redirect("/adopt", error=f"{entity.name} is no longer available for adoption.")

    form = {
        "name": name, "contact_no": contact_no, "aadhaar_no": aadhaar_no,
        "email": email, "already_pet": already_pet, "reason": reason,
    }
    errors = validate_form(ADOPTION_FORM, form)
    if errors:
        return render(request, "adopt_apply.html", {"animal": entity, "form": form, "errors": errors}, status_code=400)

    record = {
        "name": name.strip(),
        "contact_no": contact_no,
        "aadhaar_no": aadhaar_no,
        "email": email.strip(),
        "already_pet": already_pet == "yes",
        "reason": reason.strip(),
        "pet_id": entity.record_id(Source.RESCUED) or entity.record_id(Source.ADOPT),
        "pet_name": entity.name,
        "status": "pending",
    }
    try:
        await submit_record("adoptions", record)
    except ResourceError as exc:
        context = {"animal": entity, "form": form, "errors": {}, "error": str(exc)}
        return render(request, "adopt_apply.html", context, status_code=error_status(exc))
    record_activity(f"Adoption application for {entity.name} from {record['name']}.")
    return redirect("/adopt", status="adoption_submitted")


@app.get("/volunteer", tags=["Public Pages"])
def read_volunteer_page(request: Request):
    return render(request, "volunteer.html", {"form": {}, "errors": {}})


@app.post("/volunteer", status_code=HTTP_303_SEE_OTHER, tags=["Public Pages"])
async def submit_volunteer(
    request: Request,
    name: str = Form(""),
    email: str = Form(""),
    phone: str = Form(""),
    age: str = Form(""),
    address: str = Form(""),
    experience_with_animals: bool = Form(False),
    why_volunteer: str = Form(""),
):
    form = {
        "name": name, "email": email, "phone": phone, "age": age, "address": address,
        "experience_with_animals": experience_with_animals, "why_volunteer": why_volunteer,
    }
    errors = validate_form(VOLUNTEER_FORM, form)
    if errors:
        return render(request, "volunteer.html", {"form": form, "errors": errors}, status_code=400)

    record = dict(form, name=name.strip(), email=email.strip(), age=int(age), status="pending")
    try:
        await submit_record("volunteers", record)
    except ResourceError as exc:
        return render(request, "volunteer.html", {"form": form, "errors": {}, "error": str(exc)}, status_code=error_status(exc))
    record_activity(f"Volunteer application from {record['name']}.")
    return redirect("/volunteer", status="volunteer_submitted")


@app.get("/contact", tags=["Public Pages"])
def read_contact_page(request: Request):
    return render(request, "contact.html", {"form": {}, "errors": {}})


@app.post("/contact", status_code=HTTP_303_SEE_OTHER, tags=["Public Pages"])
async def submit_contact(
    request: Request,
    name: str = Form(""),
    email: str = Form(""),
    phone: str = Form(""),
    message: str = Form(""),
):
    form = {"name": name, "email": email, "phone": phone, "message": message}
    errors = validate_form(CONTACT_FORM, form)
    if errors:
        return render(request, "contact.html", {"form": form, "errors": errors}, status_code=400)

    record = {
        "name": name.strip(),
        "email": email.strip(),
        "phone": phone or None,
        "message": message.strip(),
        "read_status": False,
    }
    try:
        await submit_record("contacts", record)
    except ResourceError as exc:
        return render(request, "contact.html", {"form": form, "errors": {}, "error": str(exc)}, status_code=error_status(exc))
    record_activity(f"Contact message from {record['name']}.")
    return redirect("/contact", status="message_sent")


@app.get("/donate", tags=["Public Pages"])
def read_donate_page(request: Request):
    return render(request, "donate.html", {"form": {}, "errors": {}})


@app.post("/donate", status_code=HTTP_303_SEE_OTHER, tags=["Public Pages"])
async def submit_donation(
    request: Request,
    first_name: str = Form(""),
    last_name: str = Form(""),
    email: str = Form(""),
    phone: str = Form(""),
    amount: str = Form(""),
):
    """Records a donation. Payment itself is out of scope; the status is stored as success."""
    form = {"first_name": first_name, "last_name": last_name, "email": email, "phone": phone, "amount": amount}
    errors = validate_form(DONATION_FORM, form)
    if errors:
        return render(request, "donate.html", {"form": form, "errors": errors}, status_code=400)

    record = {
        "name": f"{first_name.strip()} {last_name.strip()}",
        "email": email.strip(),
        "phone": phone or None,
        "amount": float(amount),
        "payment_status": "success",
    }
    try:
        await submit_record("donations", record)
    except ResourceError as exc:
        return render(request, "donate.html", {"form": form, "errors": {}, "error": str(exc)}, status_code=error_status(exc))
    record_activity(f"Donation of {record['amount']:,.2f} from {record['name']}.")
    return redirect("/donate", status="donation_received")


@app.get("/lost-found", tags=["Public Pages"])
async def read_lost_found_page(request: Request):
    load_error = await refresh(lost_found)
    search = request.query_params.get("search", "")
    species = request.query_params.get("species", "all")
    location = request.query_params.get("location", "")
    found = lost_found.rows.get("found_animals", [])
    context = {
        "found_animals": filter_found_animals(found, search=search, species=species, location=location),
        "total": len(found),
        "filters": {"search": search, "species": species, "location": location},
        "species_options": SPECIES,
        "form": {},
        "errors": {},
        "load_error": load_error,
    }
    return render(request, "lost_found.html", context)


@app.post("/lost-found/report", status_code=HTTP_303_SEE_OTHER, tags=["Public Pages"])
async def submit_lost_report(
    request: Request,
    pet_name: str = Form(""),
    species: str = Form(""),
    description: str = Form(""),
    last_seen_location: str = Form(""),
    date_lost: str = Form(""),
    contact_number: str = Form(""),
    photo_url: str = Form(""),
):
    form = {
        "pet_name": pet_name, "species": species, "description": description,
        "last_seen_location": last_seen_location, "date_lost": date_lost,
        "contact_number": contact_number, "photo_url": photo_url,
    }
    errors = validate_form(LOST_FOUND_FORM, form)
    if errors:
        await refresh(lost_found)
        context = {
            "found_animals": lost_found.rows.get("found_animals", []),
            "total": len(lost_found.rows.get("found_animals", [])),
            "filters": {"search": "", "species": "all", "location": ""},
            "species_options": SPECIES,
            "form": form,
            "errors": errors,
        }
        return render(request, "lost_found.html", context, status_code=400)

    record = dict(form, photo_url=photo_url or None, status="Pending", reviewed_at=None)
    try:
        await submit_record("lost_found_submissions", record)
    except ResourceError as exc:
        return redirect("/lost-found", error=str(exc))
    record_activity(f"Lost pet report for {pet_name.strip()}.")
    return redirect("/lost-found", status="report_submitted")


@app.get("/gov-rules", tags=["Public Pages"])
async def read_gov_rules_page(request: Request):
    """Published government rules with search, jurisdiction filter and sorting."""
    load_error = await refresh(gov_rules)
    search = request.query_params.get("search", "")
    jurisdiction = request.query_params.get("jurisdiction", "all")
    sort = request.query_params.get("sort", "date-desc")
    if sort not in RULE_SORTS:
        sort = "date-desc"
    published = published_rules(gov_rules.items)
    context = {
        "rules": filter_rules(published, search=search, jurisdiction=jurisdiction, sort=sort),
        "jurisdictions": jurisdictions(published),
        "filters": {"search": search, "jurisdiction": jurisdiction, "sort": sort},
        "sorts": RULE_SORTS,
        "load_error": load_error,
    }
    return render(request, "gov_rules.html", context)


@app.get("/gov-rules/{rule_id}", tags=["Public Pages"])
async def read_gov_rule(request: Request, rule_id: str):
    await refresh(gov_rules)
    rule = gov_rules.find(rule_id)
    if rule is None or not rule.get("published"):
        return render(request, "error.html", {"message": "Rule not found."}, status_code=404)
    return render(request, "gov_rule_detail.html", {"rule": rule})


# --- 2. Authentication ---

@app.get("/admin/login", tags=["Authentication"])
def read_admin_login(request: Request):
    return render(request, "admin_login.html", {})


@app.post("/admin/login", tags=["Authentication"])
async def process_admin_login(request: Request, email: str = Form(...), password: str = Form(...)):
    # Rate limit check (per-IP)
    client_host = request.client.host if request.client else "unknown"
    now_ts = datetime.now(timezone.utc).timestamp()
    attempts = [ts for ts in LOGIN_ATTEMPTS.get(client_host, []) if now_ts - ts < LOGIN_WINDOW]
    if len(attempts) >= LOGIN_MAX_ATTEMPTS:
        return redirect("/admin/login", error="Too many login attempts. Try again later.")

    rows = await call_with_deadline(
        "admins",
        lambda: backend.select("admins", filters={"email": email.strip().lower()}),
        REQUEST_TIMEOUT_SECONDS,
        retries=1,
    )
    account = AdminAccount(**rows[0]) if rows else None
    if account and account.password_hash and pwd_context.verify(password, account.password_hash):
        LOGIN_ATTEMPTS[client_host] = []
        request.session["admin_id"] = account.id
        request.session["last_active"] = now_iso()
        record_activity(f"Admin {account.email} signed in.")
        return redirect("/admin/dashboard")

    attempts.append(now_ts)
    LOGIN_ATTEMPTS[client_host] = attempts
    return redirect("/admin/login", error="Invalid email or password.")


@app.get("/admin/logout", tags=["Authentication"])
def process_admin_logout(request: Request):
    request.session.clear()
    return redirect("/admin/login", status="logged_out")


# --- 3. Admin Dashboard ---

@app.get("/admin/dashboard", tags=["Admin Panel"])
async def read_admin_dashboard(request: Request):
    """Counts, recent activity across sections and the activity log."""
    admin = await get_current_admin(request)
    if admin is None:
        return admin_required()

    load_error = await refresh(animals, donations, volunteers, messages, adoptions)
    stats = dashboard_stats(animals.entities, donations.items, volunteers.items, messages.items, adoptions.items)
    activities = recent_activities({
        "adoption": adoptions.items,
        "donation": donations.items,
        "volunteer": volunteers.items,
        "contact": messages.items,
        "animal": animals.rows.get(RESCUED_TABLE, []) + animals.rows.get(ADOPT_TABLE, []),
    })
    context = {
        "admin": admin,
        "stats": stats,
        "activities": activities,
        "diagnostics": animals.diagnostics,
        "logs": list(reversed(logs[-10:])),  # latest 10
        "load_error": load_error,
    }
    return render(request, "admin_dashboard.html", context)


# --- 4. Animals ---

def _animals_context(search: str = "", status: str = "all") -> dict:
    shown = animals.entities
    if search:
        shown = filter_animals(shown, search=search)
    if status and status != "all":
        shown = [a for a in shown if a.current_status == status]
    return {
        "animals": shown,
        "total": len(animals.entities),
        "diagnostics": animals.diagnostics,
        "filters": {"search": search, "status": status},
        "statuses": ANIMAL_STATUSES,
        "species_options": SPECIES,
        "genders": GENDERS,
        "targets": ADD_TARGETS,
        "state": animals.state.value,
        "form": {},
        "errors": {},
    }


@app.get("/admin/animals", tags=["Admin Panel"])
async def read_admin_animals(request: Request):
    admin = await get_current_admin(request)
    if admin is None:
        return admin_required()
    load_error = await refresh(animals)
    context = _animals_context(request.query_params.get("search", ""), request.query_params.get("status", "all"))
    context.update({"admin": admin, "load_error": load_error})
    return render(request, "admin_animals.html", context)


@app.post("/admin/animals/add", status_code=HTTP_303_SEE_OTHER, tags=["Admin Panel"])
async def add_animal(
    request: Request,
    name: str = Form(""),
    species: str = Form(""),
    breed: str = Form(""),
    age: str = Form(""),
    gender: str = Form(""),
    rescue_date: str = Form(""),
    current_status: str = Form("Available"),
    rescue_story: str = Form(""),
    health_status: str = Form(""),
    image_url: str = Form(""),
    add_to: str = Form("rescued"),
):
    """Adds an animal to the adopt page, the rescued page, or both."""
    admin = await get_current_admin(request)
    if admin is None:
        return admin_required()
    await refresh(animals)
    form = {
        "name": name, "species": species, "breed": breed, "age": age, "gender": gender,
        "rescue_date": rescue_date or date.today().isoformat(), "current_status": current_status,
        "rescue_story": rescue_story, "health_status": health_status, "image_url": image_url,
    }
    try:
        await animals.add_animal(form, add_to=add_to)
    except ValidationError as exc:
        context = _animals_context()
        context.update({"admin": admin, "form": dict(form, add_to=add_to), "errors": exc.errors})
        return render(request, "admin_animals.html", context, status_code=400)
    except ShelterError as exc:
        record_activity(f"Failed: add {name} ({exc})")
        return redirect("/admin/animals", error=str(exc))
    record_activity(f"Animal '{name.strip()}' added to {add_to}.")
    return redirect("/admin/animals", status=f"{name.strip()} added")


@app.post("/admin/animals/status", status_code=HTTP_303_SEE_OTHER, tags=["Admin Panel"])
async def change_animal_status(request: Request, key: str = Form(...), status: str = Form(...)):
    """Writes the new status to every table the animal is listed in."""
    admin = await get_current_admin(request)
    if admin is None:
        return admin_required()
    await refresh(animals)
    return await run_action("/admin/animals", f"Status of {key} set to {status}", animals.set_status(key, status))


@app.get("/admin/animals/edit", tags=["Admin Panel"])
async def read_edit_animal(request: Request, key: str = ""):
    admin = await get_current_admin(request)
    if admin is None:
        return admin_required()
    load_error = await refresh(animals)
    if load_error:
        return redirect("/admin/animals", error=load_error)
    try:
        entity = animals.get(key)
    except NotFoundError:
        return redirect("/admin/animals", error=f"No animal named {key}")
    context = {
        "admin": admin, "animal": entity, "errors": {}, "statuses": ANIMAL_STATUSES,
        "species_options": SPECIES, "genders": GENDERS,
    }
    return render(request, "admin_animal_edit.html", context)


@app.post("/admin/animals/edit", status_code=HTTP_303_SEE_OTHER, tags=["Admin Panel"])
async def edit_animal(
    request: Request,
    key: str = Form(...),
    name: str = Form(""),
    species: str = Form(""),
    breed: str = Form(""),
    age: str = Form(""),
    gender: str = Form(""),
    rescue_date: str = Form(""),
    current_status: str = Form(""),
    rescue_story: str = Form(""),
    health_status: str = Form(""),
    image_url: str = Form(""),
):
    admin = await get_current_admin(request)
    if admin is None:
        return admin_required()
    await refresh(animals)
    patch = {
        "name": name, "species": species, "breed": breed, "age": age, "gender": gender,
        "rescue_date": rescue_date, "current_status": current_status, "story": rescue_story,
        "health_status": health_status, "image_url": image_url,
    }
    try:
        await animals.edit_animal(key, patch)
    except ValidationError as exc:
        try:
            entity = animals.get(key)
        except NotFoundError:
            return redirect("/admin/animals", error=str(exc))
        context = {
            "admin": admin, "animal": entity, "errors": exc.errors, "statuses": ANIMAL_STATUSES,
            "species_options": SPECIES, "genders": GENDERS,
        }
        return render(request, "admin_animal_edit.html", context, status_code=400)
    except ShelterError as exc:
        record_activity(f"Failed: edit {key} ({exc})")
        return redirect("/admin/animals", error=str(exc))
    record_activity(f"Animal '{name.strip() or key}' updated.")
    return redirect("/admin/animals", status=f"{name.strip() or key} updated")


@app.post("/admin/animals/delete", status_code=HTTP_303_SEE_OTHER, tags=["Admin Panel"])
async def delete_animal(request: Request, key: str = Form(...)):
    admin = await get_current_admin(request)
    if admin is None:
        return admin_required()
    await refresh(animals)
    return await run_action("/admin/animals", f"Animal {key} deleted", animals.delete_animal(key))


# --- 5. Adoptions ---

@app.get("/admin/adoptions", tags=["Admin Panel"])
async def read_admin_adoptions(request: Request):
    admin = await get_current_admin(request)
    if admin is None:
        return admin_required()
    load_error = await refresh(adoptions, animals)
    search = request.query_params.get("search", "")
    rows = text_search(adoptions.items, search, ADOPTION_SEARCH, exact_fields=("contact_no",))
    context = {
        "admin": admin,
        "adoptions": rows,
        "total": len(adoptions.items),
        "filters": {"search": search},
        "load_error": load_error,
    }
    return render(request, "admin_adoptions.html", context)


async def _approve_adoption(adoption_id: str) -> None:
    # the listings have to be loaded to be marked Adopted
    await adoptions.check_writable()
    await animals.check_writable()
    adoption = adoptions.find(adoption_id)
    if adoption is None:
        raise NotFoundError("Adoption request not found.")
    entity = animals.entity_for_record(adoption.get("pet_id"))
    writes = [Write("adoptions", lambda: backend.update("adoptions", adoption_id, {"status": "approved"}))]
    if entity is not None:
        writes += [
            Write(
                p.source.value,
                lambda p=p: backend.update(p.source.value, p.record_id, {"current_status": AnimalStatus.ADOPTED.value}),
            )
            for p in entity.provenance
        ]
    else:
        logger.warning("Adoption %s refers to an animal that is no longer listed", adoption_id)
    pet = entity.name if entity else adoption.get("pet_name") or "unknown animal"
    await adoptions.mutate(f"Approval of {adoption.get('name')}'s adoption of {pet}", writes)


@app.post("/admin/adoptions/approve", status_code=HTTP_303_SEE_OTHER, tags=["Admin Panel"])
async def approve_adoption(request: Request, adoption_id: str = Form(...)):
    """Approves the request and marks the animal Adopted in every table it is listed in."""
    admin = await get_current_admin(request)
    if admin is None:
        return admin_required()
    await refresh(adoptions, animals)
    return await run_action("/admin/adoptions", "Adoption approved", _approve_adoption(adoption_id))


@app.post("/admin/adoptions/reject", status_code=HTTP_303_SEE_OTHER, tags=["Admin Panel"])
async def reject_adoption(request: Request, adoption_id: str = Form(...)):
    admin = await get_current_admin(request)
    if admin is None:
        return admin_required()
    await refresh(adoptions)
    return await run_action(
        "/admin/adoptions", "Adoption rejected", adoptions.update(adoption_id, {"status": "rejected"}, action="Reject adoption")
    )


@app.post("/admin/adoptions/delete", status_code=HTTP_303_SEE_OTHER, tags=["Admin Panel"])
async def delete_adoption(request: Request, adoption_id: str = Form(...)):
    admin = await get_current_admin(request)
    if admin is None:
        return admin_required()
    await refresh(adoptions)
    return await run_action("/admin/adoptions", "Adoption request deleted", adoptions.delete(adoption_id))


# --- 6. Donations ---

@app.get("/admin/donations", tags=["Admin Panel"])
async def read_admin_donations(request: Request):
    admin = await get_current_admin(request)
    if admin is None:
        return admin_required()
    load_error = await refresh(donations)
    search = request.query_params.get("search", "")
    context = {
        "admin": admin,
        "donations": text_search(donations.items, search, DONATION_SEARCH),
        "totals": donation_totals(donations.items),
        "filters": {"search": search},
        "load_error": load_error,
    }
    return render(request, "admin_donations.html", context)


@app.post("/admin/donations/delete", status_code=HTTP_303_SEE_OTHER, tags=["Admin Panel"])
async def delete_donation(request: Request, donation_id: str = Form(...)):
    admin = await get_current_admin(request)
    if admin is None:
        return admin_required()
    await refresh(donations)
    return await run_action("/admin/donations", "Donation record deleted", donations.delete(donation_id))


# --- 7. Volunteers ---

VOLUNTEER_STATUSES = ("pending", "approved", "rejected")


@app.get("/admin/volunteers", tags=["Admin Panel"])
async def read_admin_volunteers(request: Request):
    admin = await get_current_admin(request)
    if admin is None:
        return admin_required()
    load_error = await refresh(volunteers)
    search = request.query_params.get("search", "")
    split = volunteer_split(volunteers.items)
    context = {
        "admin": admin,
        "volunteers": text_search(volunteers.items, search, VOLUNTEER_SEARCH),
        "total": len(volunteers.items),
        "experienced": len(split["experienced"]),
        "new": len(split["new"]),
        "filters": {"search": search},
        "load_error": load_error,
    }
    return render(request, "admin_volunteers.html", context)


@app.post("/admin/volunteers/status", status_code=HTTP_303_SEE_OTHER, tags=["Admin Panel"])
async def set_volunteer_status(request: Request, volunteer_id: str = Form(...), status: str = Form(...)):
    admin = await get_current_admin(request)
    if admin is None:
        return admin_required()
    if status not in VOLUNTEER_STATUSES:
        return redirect("/admin/volunteers", error=f"Invalid volunteer status {status!r}")
    await refresh(volunteers)
    volunteer = volunteers.find(volunteer_id)
    label = f"Volunteer {volunteer.get('name') if volunteer else volunteer_id} {status}"
    return await run_action("/admin/volunteers", label, volunteers.update(volunteer_id, {"status": status}, action=label))


@app.post("/admin/volunteers/delete", status_code=HTTP_303_SEE_OTHER, tags=["Admin Panel"])
async def delete_volunteer(request: Request, volunteer_id: str = Form(...)):
    admin = await get_current_admin(request)
    if admin is None:
        return admin_required()
    await refresh(volunteers)
    return await run_action("/admin/volunteers", "Volunteer application deleted", volunteers.delete(volunteer_id))


# --- 8. Messages ---

@app.get("/admin/messages", tags=["Admin Panel"])
async def read_admin_messages(request: Request):
    admin = await get_current_admin(request)
    if admin is None:
        return admin_required()
    load_error = await refresh(messages)
    search = request.query_params.get("search", "")
    context = {
        "admin": admin,
        "messages": text_search(messages.items, search, MESSAGE_SEARCH),
        "counts": message_counts(messages.items),
        "filters": {"search": search},
        "load_error": load_error,
    }
    return render(request, "admin_messages.html", context)


@app.post("/admin/messages/read", status_code=HTTP_303_SEE_OTHER, tags=["Admin Panel"])
async def mark_message_read(request: Request, message_id: str = Form(...)):
    admin = await get_current_admin(request)
    if admin is None:
        return admin_required()
    await refresh(messages)
    return await run_action(
        "/admin/messages", "Message marked as read", messages.update(message_id, {"read_status": True}, action="Mark read")
    )


@app.post("/admin/messages/delete", status_code=HTTP_303_SEE_OTHER, tags=["Admin Panel"])
async def delete_message(request: Request, message_id: str = Form(...)):
    admin = await get_current_admin(request)
    if admin is None:
        return admin_required()
    await refresh(messages)
    return await run_action("/admin/messages", "Message deleted", messages.delete(message_id))


# --- 9. Lost & Found ---

@app.get("/admin/lost-found", tags=["Admin Panel"])
async def read_admin_lost_found(request: Request):
    admin = await get_current_admin(request)
    if admin is None:
        return admin_required()
    load_error = await refresh(lost_found)
    submissions = lost_found.rows.get("lost_found_submissions", [])
    context = {
        "admin": admin,
        "pending": [s for s in submissions if s.get("status") == "Pending"],
        "reviewed": [s for s in submissions if s.get("status") != "Pending"],
        "found_animals": lost_found.rows.get("found_animals", []),
        "load_error": load_error,
    }
    return render(request, "admin_lost_found.html", context)


async def _pending_submission(submission_id: str) -> dict:
    await lost_found.check_writable()
    submission = lost_found.find(submission_id)
    if submission is None:
        raise NotFoundError("Submission not found.")
    if submission.get("status") != "Pending":
        raise ValidationError({"status": f"This report was already {str(submission.get('status')).lower()}."})
    return submission


async def _approve_submission(submission_id: str) -> None:
    submission = await _pending_submission(submission_id)
    found = {
        "pet_name": submission.get("pet_name"),
        "species": submission.get("species"),
        "description": submission.get("description"),
        "last_seen_location": submission.get("last_seen_location"),
        "date_found": submission.get("date_lost"),
        "contact_number": submission.get("contact_number"),
        "photo_url": submission.get("photo_url"),
        "finder_name": "Shelter",
        "status": "Found",
        "original_submission_id": submission_id,
    }
    review = {"status": "Approved", "reviewed_at": now_iso()}
    writes = [
        Write("found_animals", lambda: backend.insert("found_animals", found)),
        Write("lost_found_submissions", lambda: backend.update("lost_found_submissions", submission_id, review)),
    ]
    await lost_found.mutate(f"Approval of the report for {submission.get('pet_name')}", writes, sequential=True)


async def _reject_submission(submission_id: str) -> None:
    submission = await _pending_submission(submission_id)
    await lost_found.update(
        submission_id,
        {"status": "Rejected", "reviewed_at": now_iso()},
        action=f"Rejection of the report for {submission.get('pet_name')}",
    )


@app.post("/admin/lost-found/approve", status_code=HTTP_303_SEE_OTHER, tags=["Admin Panel"])
async def approve_lost_report(request: Request, submission_id: str = Form(...)):
    """Publishes the report as a found animal and marks it Approved."""
    admin = await get_current_admin(request)
    if admin is None:
        return admin_required()
    await refresh(lost_found)
    return await run_action("/admin/lost-found", "Lost pet report approved", _approve_submission(submission_id))


@app.post("/admin/lost-found/reject", status_code=HTTP_303_SEE_OTHER, tags=["Admin Panel"])
async def reject_lost_report(request: Request, submission_id: str = Form(...)):
    admin = await get_current_admin(request)
    if admin is None:
        return admin_required()
    await refresh(lost_found)
    return await run_action("/admin/lost-found", "Lost pet report rejected", _reject_submission(submission_id))


@app.post("/admin/lost-found/found/delete", status_code=HTTP_303_SEE_OTHER, tags=["Admin Panel"])
async def delete_found_animal(request: Request, found_id: str = Form(...)):
    admin = await get_current_admin(request)
    if admin is None:
        return admin_required()
    await refresh(lost_found)
    writes = [Write("found_animals", lambda: backend.delete("found_animals", found_id))]
    return await run_action("/admin/lost-found", "Found animal removed", lost_found.mutate("Remove found animal", writes))


# --- 10. Government Rules ---

@app.get("/admin/gov-rules", tags=["Admin Panel"])
async def read_admin_gov_rules(request: Request):
    admin = await get_current_admin(request)
    if admin is None:
        return admin_required()
    load_error = await refresh(gov_rules)
    editing = gov_rules.find(request.query_params.get("edit", "")) if request.query_params.get("edit") else None
    context = {
        "admin": admin,
        "rules": gov_rules.items,
        "editing": editing,
        "form": {},
        "errors": {},
        "load_error": load_error,
    }
    return render(request, "admin_gov_rules.html", context)


@app.post("/admin/gov-rules/save", status_code=HTTP_303_SEE_OTHER, tags=["Admin Panel"])
async def save_gov_rule(
    request: Request,
    rule_id: str = Form(""),
    title: str = Form(""),
    summary: str = Form(""),
    content: str = Form(""),
    pdf_url: str = Form(""),
    effective_date: str = Form(""),
    jurisdiction: str = Form(""),
    tags: str = Form(""),
    published: bool = Form(False),
    source_url: str = Form(""),
):
    """Creates a rule, or updates one when rule_id is given. Tags come in as a comma list."""
    admin = await get_current_admin(request)
    if admin is None:
        return admin_required()
    load_error = await refresh(gov_rules)
    if load_error:
        return redirect("/admin/gov-rules", error=load_error)
    current = gov_rules.find(rule_id) if rule_id else None
    if rule_id and current is None:
        return redirect("/admin/gov-rules", error="Rule not found.")

    form = {"title": title, "summary": summary}
    errors = validate_form(GOV_RULE_FORM, form)
    if errors:
        context = {
            "admin": admin, "rules": gov_rules.items, "editing": current,
            "form": {
                "title": title, "summary": summary, "content": content, "pdf_url": pdf_url,
                "effective_date": effective_date, "jurisdiction": jurisdiction, "tags": tags,
                "published": published, "source_url": source_url,
            },
            "errors": errors,
        }
        return render(request, "admin_gov_rules.html", context, status_code=400)

    tag_list = parse_tags(tags)
    was_published = bool(current and current.get("published"))
    rule = {
        "title": title.strip(),
        "summary": summary.strip() or None,
        "content": content.strip() or None,
        "pdf_url": pdf_url.strip() or None,
        "effective_date": effective_date or None,
        "jurisdiction": jurisdiction.strip() or None,
        "tags": tag_list or None,
        "published": published,
        # stamped only on the transition to published
        "published_at": now_iso() if published and not was_published else (current or {}).get("published_at"),
        "source_url": source_url.strip() or None,
        "updated_at": now_iso(),
    }
    if current is None:
        rule["created_by"] = admin.id
        label = f"Rule '{rule['title']}' created"
        action = gov_rules.insert(rule, action="Create rule")
    else:
        label = f"Rule '{rule['title']}' updated"
        action = gov_rules.update(rule_id, rule, action="Update rule")
    return await run_action("/admin/gov-rules", label, action)


@app.post("/admin/gov-rules/toggle", status_code=HTTP_303_SEE_OTHER, tags=["Admin Panel"])
async def toggle_gov_rule(request: Request, rule_id: str = Form(...)):
    admin = await get_current_admin(request)
    if admin is None:
        return admin_required()
    load_error = await refresh(gov_rules)
    if load_error:
        return redirect("/admin/gov-rules", error=load_error)
    rule = gov_rules.find(rule_id)
    if rule is None:
        return redirect("/admin/gov-rules", error="Rule not found.")
    publish = not rule.get("published")
    patch = {
        "published": publish,
        "published_at": now_iso() if publish else rule.get("published_at"),
        "updated_at": now_iso(),
    }
    label = f"Rule '{rule.get('title')}' {'published' if publish else 'unpublished'}"
    return await run_action("/admin/gov-rules", label, gov_rules.update(rule_id, patch, action=label))


@app.post("/admin/gov-rules/delete", status_code=HTTP_303_SEE_OTHER, tags=["Admin Panel"])
async def delete_gov_rule(request: Request, rule_id: str = Form(...)):
    admin = await get_current_admin(request)
    if admin is None:
        return admin_required()
    await refresh(gov_rules)
    return await run_action("/admin/gov-rules", "Rule deleted", gov_rules.delete(rule_id))


# --- 11. Settings ---

@app.get("/admin/settings", tags=["Admin Panel"])
async def read_admin_settings(request: Request):
    admin = await get_current_admin(request)
    if admin is None:
        return admin_required()
    return render(request, "admin_settings.html", {"admin": admin})


@app.post("/admin/settings/profile", status_code=HTTP_303_SEE_OTHER, tags=["Admin Panel"])
async def update_admin_profile(request: Request, name: str = Form("")):
    admin = await get_current_admin(request)
    if admin is None:
        return admin_required()
    if not name.strip():
        return redirect("/admin/settings", error="Name is required.")
    try:
        await call_with_deadline(
            "admins", lambda: backend.update("admins", admin.id, {"name": name.strip()}), REQUEST_TIMEOUT_SECONDS
        )
    except ResourceError as exc:
        return redirect("/admin/settings", error=str(exc))
    record_activity(f"Admin {admin.email} renamed to {name.strip()}.")
    return redirect("/admin/settings", status="profile_updated")


@app.post("/admin/settings/password", status_code=HTTP_303_SEE_OTHER, tags=["Admin Panel"])
async def change_admin_password(
    request: Request,
    current_password: str = Form(""),
    new_password: str = Form(""),
    confirm_password: str = Form(""),
):
    admin = await get_current_admin(request)
    if admin is None:
        return admin_required()
    if not admin.password_hash or not pwd_context.verify(current_password, admin.password_hash):
        return redirect("/admin/settings", error="Current password is incorrect.")
    if new_password != confirm_password:
        return redirect("/admin/settings", error="New passwords do not match.")
    if len(new_password) < MIN_PASSWORD_LENGTH:
        return redirect("/admin/settings", error=f"Password must be at least {MIN_PASSWORD_LENGTH} characters long.")
    try:
        await call_with_deadline(
            "admins",
            lambda: backend.update("admins", admin.id, {"password_hash": pwd_context.hash(new_password)}),
            REQUEST_TIMEOUT_SECONDS,
        )
    except ResourceError as exc:
        return redirect("/admin/settings", error=str(exc))
    record_activity(f"Admin {admin.email} changed their password.")
    return redirect("/admin/settings", status="password_changed")
