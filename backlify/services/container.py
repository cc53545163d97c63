"""
Service container.
Psychology: Collaborators are wired once and injected, never imported as globals.
Intention: Build the full object graph from Settings; tests swap any piece they need.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from backlify.auth.account_lock import AccountLock
from backlify.auth.tokens import TokenService
from backlify.clock import Clock
from backlify.config import Settings
from backlify.database import Database
from backlify.integrations.epoint import EpointClient
from backlify.integrations.google_oauth import GoogleOAuthClient
from backlify.integrations.schema_backend import SchemaBackend, UnavailableSchemaBackend
from backlify.middleware.cors import CorsPolicy
from backlify.middleware.input_validator import InputScanner
from backlify.middleware.ip_blacklist import IpBlacklist
from backlify.middleware.rate_limiter import RateLimiter
from backlify.middleware.route_table import RouteTable
from backlify.services.audit import AuditSink
from backlify.services.payment_service import PaymentService
from backlify.services.usage_service import UsageAccountant

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    clock: Clock
    database: Database
    audit: AuditSink
    tokens: TokenService
    account_lock: AccountLock
    usage: UsageAccountant
    gateway: EpointClient
    payments: PaymentService
    google: GoogleOAuthClient
    schema_backend: SchemaBackend
    route_table: RouteTable
    cors: CorsPolicy
    blacklist: IpBlacklist
    rate_limiter: RateLimiter
    scanner: InputScanner

    @classmethod
    def build(
        cls,
        settings: Settings,
        database: Optional[Database] = None,
        clock: Optional[Clock] = None,
        schema_backend: Optional[SchemaBackend] = None,
    ) -> "ServiceContainer":
        clock = clock or Clock()
        database = database or Database.from_url(settings.async_database_url)
        audit = AuditSink(database, clock)
        blacklist = IpBlacklist(database, clock, audit)
        gateway = EpointClient(
            public_key=settings.epoint_public_key,
            private_key=settings.epoint_private_key,
            base_url=settings.epoint_api_base_url,
            timeout=settings.epoint_timeout_seconds,
            currency=settings.payment_currency,
            language=settings.payment_language,
        )

        if not gateway.is_configured:
            logger.warning("Epoint keys are not configured; payment endpoints will answer 502")

        return cls(
            settings=settings,
            clock=clock,
            database=database,
            audit=audit,
            tokens=TokenService(
                settings.jwt_secret_key,
                clock,
                algorithm=settings.jwt_algorithm,
                access_ttl=timedelta(seconds=settings.access_token_ttl_seconds),
                refresh_ttl=timedelta(seconds=settings.refresh_token_ttl_seconds),
            ),
            account_lock=AccountLock(clock, audit),
            usage=UsageAccountant(clock),
            gateway=gateway,
            payments=PaymentService(clock, gateway, settings, audit),
            google=GoogleOAuthClient(settings.google_userinfo_url, timeout=settings.google_timeout_seconds),
            schema_backend=schema_backend or UnavailableSchemaBackend(),
            route_table=RouteTable(),
            cors=CorsPolicy(settings.allowed_origins),
            blacklist=blacklist,
            rate_limiter=RateLimiter(database, clock, audit, blacklist),
            scanner=InputScanner(clock, audit, blacklist),
        )

    async def close(self) -> None:
        await self.gateway.close()
        await self.google.close()
        await self.database.dispose()
