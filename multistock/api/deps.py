"""FastAPI dependencies: engine, clock, channel, tenant resolution and partition sessions."""

from typing import Iterator

from fastapi import Depends, Request, Response
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from multistock.application.channel import build_channel
from multistock.application.resolver import RequestSignals, ResolvedTenant, TenantResolver
from multistock.application.tenant_registry import TenantRegistry
from multistock.core.logging_config import set_request_context
from multistock.core_settings import Settings, get_settings
from multistock.domain.clock import Clock, SystemClock
from multistock.domain.errors import TenantRequired
from multistock.infrastructure import db
from multistock.infrastructure.db import partition_session

_system_clock = SystemClock()
_channel = None


def get_engine() -> Engine:
    return db.engine


def get_clock() -> Clock:
    return _system_clock


def get_channel():
    global _channel
    if _channel is None:
        _channel = build_channel(get_settings())
    return _channel


def get_registry(engine: Engine = Depends(get_engine), clock: Clock = Depends(get_clock)) -> TenantRegistry:
    return TenantRegistry(engine, clock=clock)


def get_resolver(
    registry: TenantRegistry = Depends(get_registry),
    settings: Settings = Depends(get_settings),
) -> TenantResolver:
    return TenantResolver(registry, settings=settings)


def get_tenant_context(
    request: Request,
    response: Response,
    resolver: TenantResolver = Depends(get_resolver),
) -> ResolvedTenant:
    signals = RequestSignals(
        path=request.url.path,
        headers=request.headers,
        host=request.headers.get("host"),
        query=request.query_params,
    )
    resolved = resolver.resolve(signals)
    if resolved is None:
        # Tenant-scoped routes are never public, whatever the whitelist says.
        raise TenantRequired()
    request.state.tenant_code = resolved.tenant_code
    set_request_context(tenant_code=resolved.tenant_code)
    response.headers["X-Tenant-Active"] = resolved.tenant_code
    return resolved


def get_partition_db(
    context: ResolvedTenant = Depends(get_tenant_context),
    engine: Engine = Depends(get_engine),
) -> Iterator[Session]:
    session = partition_session(engine, context.partition)
    try:
        yield session
    finally:
        session.close()
