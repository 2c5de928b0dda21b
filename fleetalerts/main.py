from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from fleetalerts.alerts.dispatcher import ChannelDispatcher
from fleetalerts.alerts.email_notifier import EmailNotifier
from fleetalerts.alerts.log_notifier import log_notify
from fleetalerts.api.routes import broadcast_transition, router, ws_router
from fleetalerts.config import settings
from fleetalerts.db import database as db
from fleetalerts.engine.runtime import build_engine
from fleetalerts.models.alert import Channel
from fleetalerts.rules.table import load_rule_table

logger = logging.getLogger(__name__)


def build_dispatcher(email: EmailNotifier | None = None) -> ChannelDispatcher:
    dispatcher = ChannelDispatcher(retry_delays=settings.dispatch_retry_delays)
    dispatcher.add_route(Channel.IN_APP, log_notify)
    if email is not None:
        dispatcher.add_route(Channel.EMAIL, email.notify)
    return dispatcher


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    await db.init_db()

    rule_table = load_rule_table(settings.rules_path)
    email = EmailNotifier(settings.email) if settings.email.enabled else None
    engine = build_engine(
        rule_table,
        settings,
        dispatcher=build_dispatcher(email),
        on_change=broadcast_transition,
    )
    app.state.engine = engine
    await engine.start()
    if email is not None:
        await email.start()

    logger.info("Fleet alerts started with rule table v%s", rule_table.version)
    yield

    # Engine first so in-flight dispatches reach the notifier before its final flush
    await engine.stop()
    if email is not None:
        await email.stop()
    logger.info("Fleet alerts stopped")


def create_app() -> FastAPI:
    app = FastAPI(title=settings.app_name, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)
    app.include_router(ws_router)
    return app


app = create_app()
