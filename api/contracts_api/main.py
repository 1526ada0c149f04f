from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from .routers import contracts, webhook_logs, webhooks
from .db import init_db
from .logging_config import setup_logging

setup_logging()

app = FastAPI(title="Contracts API (ZapSign webhooks)")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
def on_startup():
    init_db()

app.include_router(webhooks.router, prefix="/api/webhooks/zapsign", tags=["webhooks"])
app.include_router(contracts.router, prefix="/api/contracts", tags=["contracts"])
app.include_router(webhook_logs.router, prefix="/api/webhook-logs", tags=["webhook-logs"])

@app.get("/")
def root():
    return {"ok": True, "service": "contracts-api"}
