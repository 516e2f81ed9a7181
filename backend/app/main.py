"""FastAPI application entrypoint."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api import club_settings, membership, ops, workshops
from app.api.errors import install_error_handlers
from app.infra import postgres
from app.obs import init as obs_init
from app.settings import settings

DEV_ORIGINS = [
	"http://localhost:5173",
	"http://127.0.0.1:5173",
	"http://localhost:4173",
	"http://127.0.0.1:4173",
	"http://localhost:3000",
]


@asynccontextmanager
async def lifespan(app: FastAPI):
	await postgres.init_pool()
	try:
		yield
	finally:
		await postgres.close_pool()


def _cors_origins() -> list[str]:
	origins = list(settings.cors_allow_origins)
	if not origins or "*" in origins:
		# Starlette disallows '*' together with allow_credentials=True.
		origins = DEV_ORIGINS if settings.is_dev() else []
	return origins


app = FastAPI(title="Club Workshops API", lifespan=lifespan)
install_error_handlers(app)

app.add_middleware(
	CORSMiddleware,
	allow_origins=_cors_origins(),
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
	expose_headers=["X-Request-Id"],
)
obs_init(app)

app.include_router(ops.router)
app.include_router(workshops.router)
app.include_router(club_settings.router)
app.include_router(membership.router)
