import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ledgerly.config import get_settings
from ledgerly.database import SessionLocal, init_db
from ledgerly.app.seeders import seed_expense_categories
from ledgerly.app.routes import auth, bank_accounts, bank_connections, categories, subscription, webhooks

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    db = SessionLocal()
    try:
        seed_expense_categories(db)
    finally:
        db.close()

    logger.info(f"Ledgerly API started ({get_settings().environment})")
    yield


app = FastAPI(
    title="Ledgerly API",
    description="Personal finance tracking with bank sync and subscription plans",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[get_settings().frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router, prefix="/api")
app.include_router(bank_connections.router, prefix="/api")
app.include_router(bank_accounts.router, prefix="/api")
app.include_router(categories.router, prefix="/api")
app.include_router(subscription.router, prefix="/api")
app.include_router(webhooks.router, prefix="/api")


@app.get("/api/health")
def health_check():
    return {"status": "healthy"}
