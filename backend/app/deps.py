from collections.abc import Generator
from typing import Annotated

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlmodel import Session

from app.clients.auth_client import AuthClient
from app.clients.escrow_client import EscrowAdapter
from app.clients.payment_gateway import PaymentGateway
from app.clients.tracking_client import Track17Client
from app.core.db import engine
from app.core.errors import Forbidden
from app.core.redis import RedisClient, redis_client
from app.models import Principal, UserRole
from app.services.user_service import UserService


def get_db() -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session


def get_redis() -> RedisClient:
    return redis_client


RedisDep = Annotated[RedisClient, Depends(get_redis)]
SessionDep = Annotated[Session, Depends(get_db)]


# Outbound collaborators are created once in the lifespan and kept on app.state


def get_auth_client(request: Request) -> AuthClient:
    return request.app.state.auth_client


def get_razorpay(request: Request) -> PaymentGateway:
    return request.app.state.razorpay


def get_paypal(request: Request) -> PaymentGateway:
    return request.app.state.paypal


def get_tracking_client(request: Request) -> Track17Client:
    return request.app.state.tracking_client


def get_escrow(request: Request) -> EscrowAdapter:
    return request.app.state.escrow


AuthClientDep = Annotated[AuthClient, Depends(get_auth_client)]
RazorpayDep = Annotated[PaymentGateway, Depends(get_razorpay)]
PayPalDep = Annotated[PaymentGateway, Depends(get_paypal)]
TrackingClientDep = Annotated[Track17Client, Depends(get_tracking_client)]
EscrowDep = Annotated[EscrowAdapter, Depends(get_escrow)]


bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
    redis: RedisDep,
    auth_client: AuthClientDep,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> Principal:
    token = credentials.credentials if credentials else None
    return await UserService.resolve_principal(token, redis, auth_client)


CurrentUser = Annotated[Principal, Depends(get_current_user)]


def get_current_vendor(user: CurrentUser) -> Principal:
    if user.role not in (UserRole.VENDOR, UserRole.ADMIN):
        raise Forbidden("Vendor access required")
    return user


def get_current_admin(user: CurrentUser) -> Principal:
    if user.role != UserRole.ADMIN:
        raise Forbidden("Admin access required")
    return user


CurrentVendor = Annotated[Principal, Depends(get_current_vendor)]
CurrentAdmin = Annotated[Principal, Depends(get_current_admin)]
