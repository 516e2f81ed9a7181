"""Observability package bootstrap."""

from __future__ import annotations

from fastapi import FastAPI

from app.obs import logging as obs_logging
from app.obs import middleware

_initialised = False


def init(app: FastAPI) -> None:
	"""Configure JSON logging once and attach the request middleware to ``app``."""
	global _initialised
	if not _initialised:
		obs_logging.configure_logging()
		_initialised = True
	middleware.install(app)


__all__ = ["init"]
