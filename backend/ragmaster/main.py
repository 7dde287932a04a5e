# ragmaster/main.py
# ──────────────────────────────────────────────────────────────────────────────
#  RAG Master – FastAPI backend
#  Admin console API + WhatsApp ⇄ Gemini relay
# ──────────────────────────────────────────────────────────────────────────────
import json
from typing import Any, Dict, List, Literal, Optional

from fastapi import (
    FastAPI, Depends, UploadFile, File, Request, BackgroundTasks,
    HTTPException, status, Query
)
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import Session
from sqlalchemy import text
from pydantic import BaseModel, Field, model_validator

# ───────────────────────── local imports ─────────────────────────────────────
from .               import models, documents, schema, settings_store, stats, strategy
from .broadcast      import send_broadcast
from .chat           import ChatRelay
from .config         import CORS_ALLOW_ORIGINS, DB_AUTO_CREATE, PORT
from .database       import engine, Base, SessionLocal, get_db
from .errors         import DuplicateDocument, RelayError, ServiceNotConfigured
from .gemini         import GeminiClient, client_cell
from .log            import get_logger
from .models         import utcnow
from .security       import Principal, verify_token, require_admin, require_editor
from .users          import ProfileUserRepository, UserRepository
from .webhook        import VerificationFailed, WebhookRelay
from .whatsapp       import WhatsAppClient

logger = get_logger("main")

# ───────────────────────── FastAPI app ───────────────────────────────────────
app = FastAPI(title="RAG Master Backend", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

chat_relay    = ChatRelay()
webhook_relay = WebhookRelay(SessionLocal, client_cell)

# ───────────────────────── Startup ───────────────────────────────────────────
@app.on_event("startup")
def _startup() -> None:
    if DB_AUTO_CREATE:
        Base.metadata.create_all(bind=engine)
    try:
        schema.check(engine)
    except Exception as exc:
        logger.warning("[Startup] schema check skipped: %s", exc)
    db = SessionLocal()
    try:
        client_cell.reload(settings_store.resolve_credentials(db).gemini_api_key)
    except ServiceNotConfigured:
        pass
    except Exception as exc:
        logger.warning("[Startup] Gemini client init failed: %s", exc)
    finally:
        db.close()

# ───────────────────────── Error mapping ─────────────────────────────────────
@app.exception_handler(DuplicateDocument)
async def _duplicate(request: Request, exc: DuplicateDocument):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"message": "Duplicate file", "file": documents.to_dict(exc.existing)},
    )

@app.exception_handler(RelayError)
async def _relay_error(request: Request, exc: RelayError):
    logger.error("[API] %s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})

@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST,
                        content={"detail": jsonable_encoder(exc.errors())})

# ───────────────────────── Dependencies ──────────────────────────────────────
def get_gemini(db: Session = Depends(get_db)) -> GeminiClient:
    return client_cell.get(lambda: settings_store.resolve_credentials(db).gemini_api_key)

def get_optional_gemini(db: Session = Depends(get_db)) -> Optional[GeminiClient]:
    try:
        return get_gemini(db)
    except ServiceNotConfigured:
        return None

def get_chat_relay() -> ChatRelay:
    return chat_relay

def get_webhook_relay() -> WebhookRelay:
    return webhook_relay

def get_whatsapp_factory():
    return WhatsAppClient

def get_user_repository(db: Session = Depends(get_db)) -> UserRepository:
    return ProfileUserRepository(db)

# ───────────────────────── Pydantic DTOs ─────────────────────────────────────
Role       = Literal["admin", "user", "viewer"]
UserStatus = Literal["active", "invited", "suspended"]

class UserCreate(BaseModel):
    email    : str
    firstName: str = ""
    lastName : str = ""
    role     : Role = "user"

class UserUpdate(BaseModel):
    firstName: Optional[str] = None
    lastName : Optional[str] = None
    role     : Optional[Role] = None
    status   : Optional[UserStatus] = None

class ConfigUpdate(BaseModel):
    systemInstruction    : Optional[str] = None
    marketingInstruction : Optional[str] = None
    geminiApiKey         : Optional[str] = None
    whatsappToken        : Optional[str] = None
    whatsappPhoneNumberId: Optional[str] = None
    verifyToken          : Optional[str] = None
    fbAppSecret          : Optional[str] = None
    fbPageToken          : Optional[str] = None
    messengerToken       : Optional[str] = None
    instagramToken       : Optional[str] = None

class ProfileUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name : Optional[str] = None
    bio       : Optional[str] = None
    job_title : Optional[str] = None

class ChatRequest(BaseModel):
    message : Optional[str] = None
    audio   : Optional[str] = None
    image   : Optional[str] = None
    mimeType: Optional[str] = None

class ChatResponse(BaseModel):
    response: str

class StrategyRequest(BaseModel):
    startDate    : str
    endDate      : str
    mode         : Literal["messaging", "social"] = "messaging"
    language     : Literal["fr", "en", "es", "ar"] = "fr"
    contentFilter: Literal["frequent_questions", "low_confidence", "negative_sentiment"] = "frequent_questions"
    objective    : Literal["inform", "educate", "action", "correct", "event"] = "inform"
    tone         : Literal["formal", "friendly", "urgent", "educational"] = "formal"

class BroadcastRequest(BaseModel):
    numbers     : List[str] = Field(..., min_length=1)
    type        : Literal["text", "template"] = "text"
    message     : Optional[str] = None
    templateName: Optional[str] = None
    templateLang: str = "en_US"

    @model_validator(mode="after")
    def _content_matches_type(self):
        if self.type == "text" and not (self.message or "").strip():
            raise ValueError("message is required for a text broadcast")
        if self.type == "template" and not self.templateName:
            raise ValueError("templateName is required for a template broadcast")
        return self

# ───────────────────────── Routes ────────────────────────────────────────────
@app.get("/")
def root():
    return {"message": "RAG Master backend", "llm_configured": client_cell.loaded}

@app.get("/healthz")
def healthz(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        db_ok = True
    except Exception as exc:
        db_ok = False
        logger.error("[Health] DB error: %s", exc)
    return {"status": "ok" if db_ok else "degraded", "db": db_ok}

# ───────────────────────── Users (admin) ─────────────────────────────────────
@app.get("/api/users")
def list_users(repo: UserRepository = Depends(get_user_repository), user: Principal = Depends(require_admin)):
    return repo.list()

@app.post("/api/users", status_code=status.HTTP_201_CREATED)
def create_user(body: UserCreate, repo: UserRepository = Depends(get_user_repository),
                user: Principal = Depends(require_admin)):
    return repo.create(body.model_dump())

@app.put("/api/users/{user_id}")
def update_user(user_id: str, body: UserUpdate, repo: UserRepository = Depends(get_user_repository),
                user: Principal = Depends(require_admin)):
    updated = repo.update(user_id, body.model_dump(exclude_none=True))
    if updated is None:
        raise HTTPException(404, "User not found")
    return updated

@app.delete("/api/users/{user_id}")
def delete_user(user_id: str, repo: UserRepository = Depends(get_user_repository),
                user: Principal = Depends(require_admin)):
    if not repo.delete(user_id):
        raise HTTPException(404, "User not found")
    return {"success": True}

# ───────────────────────── Config ────────────────────────────────────────────
@app.get("/api/config")
def read_config(db: Session = Depends(get_db), user: Principal = Depends(verify_token)):
    return settings_store.read_masked(db)

@app.post("/api/config")
def save_config(body: ConfigUpdate, db: Session = Depends(get_db), user: Principal = Depends(require_admin)):
    changes = settings_store.write(db, body.model_dump())
    if "gemini_api_key" in changes:
        client_cell.reload(settings_store.resolve_credentials(db).gemini_api_key)
    return {"success": True}

# ───────────────────────── Profile ───────────────────────────────────────────
def _profile_out(p: Optional[models.Profile]) -> Dict[str, Any]:
    if p is None:
        return {}
    return {
        "id": p.id, "email": p.email, "first_name": p.first_name, "last_name": p.last_name,
        "role": p.role, "status": p.status, "bio": p.bio, "job_title": p.job_title,
        "last_active": p.last_active.isoformat() if p.last_active else None,
    }

@app.get("/api/profile")
def read_profile(db: Session = Depends(get_db), user: Principal = Depends(verify_token)):
    return _profile_out(db.get(models.Profile, user.id))

@app.put("/api/profile")
def update_profile(body: ProfileUpdate, db: Session = Depends(get_db), user: Principal = Depends(verify_token)):
    p = db.get(models.Profile, user.id)
    if p is None:
        p = models.Profile(id=user.id, email=user.email, role=user.role, status="active")
        db.add(p)
    for field, value in body.model_dump(exclude_none=True).items():
        setattr(p, field, value)
    p.updated_at = utcnow()
    db.commit()
    return {"success": True}

# ───────────────────────── Files ─────────────────────────────────────────────
@app.get("/api/files")
def list_files(db: Session = Depends(get_db), user: Principal = Depends(verify_token)):
    return [documents.to_dict(d) for d in documents.list_documents(db)]

@app.post("/api/upload")
def upload_file(
    file  : Optional[UploadFile] = File(None),
    db    : Session              = Depends(get_db),
    user  : Principal            = Depends(require_editor),
    client: GeminiClient         = Depends(get_gemini),
):
    if file is None or not file.filename:
        raise HTTPException(400, "No file uploaded")
    data = file.file.read()
    if not data:
        raise HTTPException(400, "Uploaded file is empty")
    doc = documents.ingest(db, client, file.filename, file.content_type, data)
    return {"success": True, "file": documents.to_dict(doc)}

@app.delete("/api/files/{doc_id}")
def delete_file(
    doc_id: int,
    db    : Session                = Depends(get_db),
    user  : Principal              = Depends(require_admin),
    client: Optional[GeminiClient] = Depends(get_optional_gemini),
):
    doc = db.get(models.Document, doc_id)
    if doc is None:
        raise HTTPException(404, "File not found")
    documents.delete(db, client, doc)
    return {"success": True}

# ───────────────────────── Stats / contacts / sessions ──────────────────────
@app.get("/api/stats")
def get_stats(db: Session = Depends(get_db), user: Principal = Depends(verify_token)):
    return stats.summary(db)

@app.get("/api/contacts")
def get_contacts(db: Session = Depends(get_db), user: Principal = Depends(verify_token)):
    return stats.contacts(db)

@app.get("/api/sessions")
def get_sessions(
    channel: Optional[Literal["web", "whatsapp"]] = Query(None),
    db     : Session = Depends(get_db),
    user   : Principal = Depends(verify_token),
):
    return stats.sessions(db, channel=channel)

@app.get("/api/sessions/{user_id}/messages")
def get_session_messages(
    user_id: str,
    channel: Optional[Literal["web", "whatsapp"]] = Query(None),
    db     : Session = Depends(get_db),
    user   : Principal = Depends(verify_token),
):
    return stats.history(db, user_id, channel=channel)

# ───────────────────────── Strategy ──────────────────────────────────────────
@app.post("/api/strategy/generate")
def generate_strategy(
    body  : StrategyRequest,
    db    : Session      = Depends(get_db),
    user  : Principal    = Depends(verify_token),
    client: GeminiClient = Depends(get_gemini),
):
    return strategy.generate(client, body.model_dump(), settings_store.marketing_instruction(db))

# ───────────────────────── Broadcast ─────────────────────────────────────────
@app.post("/api/whatsapp/broadcast")
def broadcast(
    body      : BroadcastRequest,
    db        : Session   = Depends(get_db),
    user      : Principal = Depends(require_admin),
    wa_factory            = Depends(get_whatsapp_factory),
):
    creds = settings_store.resolve_credentials(db)
    if not creds.whatsapp_phone_number_id or not creds.whatsapp_token:
        raise HTTPException(400, "WhatsApp credentials missing in config.")

    wa = wa_factory(creds.whatsapp_token, creds.whatsapp_phone_number_id)
    report = send_broadcast(
        wa, body.numbers,
        kind=body.type, message=body.message,
        template_name=body.templateName, template_lang=body.templateLang,
    )
    return report.as_dict()

# ───────────────────────── Chat (RAG) ────────────────────────────────────────
@app.post("/api/chat", response_model=ChatResponse)
def chat(
    body  : ChatRequest,
    db    : Session      = Depends(get_db),
    user  : Principal    = Depends(verify_token),
    client: GeminiClient = Depends(get_gemini),
    relay : ChatRelay    = Depends(get_chat_relay),
):
    if not (body.message or body.audio or body.image):
        raise HTTPException(400, "A message, audio or image is required.")
    answer = relay.reply(
        db, client, channel="web", user_id=user.id,
        message=body.message, audio=body.audio, image=body.image, mime_type=body.mimeType,
    )
    return ChatResponse(response=answer)

# ───────────────────────── WhatsApp webhook ──────────────────────────────────
@app.get("/webhook")
def webhook_verify(
    hub_mode        : Optional[str] = Query(None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(None, alias="hub.verify_token"),
    hub_challenge   : Optional[str] = Query(None, alias="hub.challenge"),
    db              : Session       = Depends(get_db),
    relay           : WebhookRelay  = Depends(get_webhook_relay),
):
    try:
        challenge = relay.verify(db, hub_mode, hub_verify_token, hub_challenge)
    except VerificationFailed:
        raise HTTPException(403, "Verification failed")
    return PlainTextResponse(challenge)

@app.post("/webhook")
async def webhook_event(
    request         : Request,
    background_tasks: BackgroundTasks,
    relay           : WebhookRelay = Depends(get_webhook_relay),
):
    # Meta only needs the 200; checks and processing run after the response
    raw = await request.body()
    try:
        body = json.loads(raw or b"{}")
    except ValueError:
        logger.warning("[Webhook] non-JSON delivery ignored")
        return PlainTextResponse("EVENT_RECEIVED")

    background_tasks.add_task(relay.deliver, body, raw, request.headers.get("x-hub-signature-256"))
    return PlainTextResponse("EVENT_RECEIVED")


def run() -> None:
    import uvicorn
    uvicorn.run("ragmaster.main:app", host="0.0.0.0", port=PORT)


if __name__ == "__main__":
    run()
