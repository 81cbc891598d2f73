import os

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from app.database import get_db
from app.logging_config import setup_logging
from app.models import Account, InboundEvent, LinkRequest, OutboundMessage, PendingAction
from app.routers import admin, webhook

setup_logging()

app = FastAPI(
    title="Sophia WhatsApp API",
    description="Message orchestration for the Sophia WhatsApp coaching assistant",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.include_router(admin.router)


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    return {
        "status": "ok",
        "accounts": db.query(Account).count(),
        "inbound_events": db.query(InboundEvent).count(),
        "outbound_messages": db.query(OutboundMessage).count(),
        "link_requests": db.query(LinkRequest).count(),
        "pending_actions": db.query(PendingAction).count(),
    }
