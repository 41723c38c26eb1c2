"""
Main FastAPI application for the script marketplace backend.
Serves the Stripe webhook, checkout, seller integrations, operator API and metrics.
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from scriptmarket.core.config import settings
from scriptmarket.core.logging import configure_logging
from scriptmarket.api.routes import admin, checkout, connect, health, tradingview, webhooks
from scriptmarket.utils.metrics import router as metrics_router


configure_logging()

app = FastAPI(
    title="Script Marketplace API",
    description="Purchase fulfillment, TradingView access and seller payouts",
    version="1.0.0",
)

# CORS
origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
if not origins:
    origins = ["http://localhost:3000", "http://127.0.0.1:3000"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(health.router, tags=["health"])
app.include_router(webhooks.router)
app.include_router(checkout.router)
app.include_router(tradingview.router)
app.include_router(connect.router)
app.include_router(admin.router)
app.include_router(metrics_router)
