"""
FastAPI APIs for XRPL project donations signed with Xaman
- Donors link a wallet by signing a Xaman SignIn payload
- Donations are priced from the project's quality score and donation volume, quoted in RLUSD and XRP
- Each donation is a Xaman Payment payload to the treasury; poll and push both settle it exactly once
- Donors without a trustline to a project token get a Xaman TrustSet payload to add one
- When an issuer seed is configured, settled donations are rewarded with project tokens as a ledger Check

Notes:
- Supabase Postgres is the document store (tables: projects, wallet_link_requests, wallets,
  donation_requests, donation_records, trustline_requests).
- XRPL_RPC_URL defaults to testnet.

Run:
  pip install -e .
  export SUPABASE_URL=... SUPABASE_KEY=... XAMAN_API_KEY=... XAMAN_API_SECRET=... XRPL_TREASURY_ADDRESS=...
  PORT=8000 uvicorn xrpl_donations.app:app --reload

Set the PORT/HOST environment variables to override the defaults when running locally.
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .core.config import LOG_LEVEL
from .core.services import create_services
from .routers import donations, meta, projects, trustlines, wallets

logging.basicConfig(
    level=LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

docs_url = "/docs"
redoc_url = "/redoc"

if os.getenv("APP_ENV") == "prod":
    docs_url = None
    redoc_url = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.services = await create_services()
    logger.info("Services ready")
    try:
        yield
    finally:
        await app.state.services.aclose()


app = FastAPI(
    title="XRPL Donation APIs (Supabase + Xaman)",
    version="1.0.0",
    docs_url=docs_url,
    redoc_url=redoc_url,
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
def health():
    return {"ok": True}


app.include_router(wallets.router)
app.include_router(donations.router)
app.include_router(projects.router)
app.include_router(trustlines.router)
app.include_router(meta.router)

if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", "8000"))
    host = os.getenv("HOST", "0.0.0.0")
    uvicorn.run("xrpl_donations.app:app", host=host, port=port, reload=True)
