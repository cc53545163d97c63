"""
Input scanner.
Psychology: Obvious SQL and script injection is refused at the door and remembered.
Intention: Scan body, query and path recursively, block with 400, escalate repeat offenders
to a 24 hour ban, and hand handlers an HTML-escaped copy of everything except passwords.
"""
import html
import logging
import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional, Pattern

from sqlalchemy.exc import SQLAlchemyError

from backlify.clock import Clock
from backlify.errors import InputInvalid, SecurityEventType
from backlify.middleware.context import RequestContext
from backlify.middleware.ip_blacklist import IpBlacklist
from backlify.services.audit import AuditSink

logger = logging.getLogger(__name__)

EXCERPT_LENGTH = 100

ESCALATION_THRESHOLD = 3
ESCALATION_WINDOW = timedelta(minutes=5)
ESCALATION_BAN = timedelta(hours=24)
ESCALATION_REASON = "Multiple injection attempts"

SCHEMA_PATHS = ("/generate-schema", "/modify-schema", "/create-api-from-schema")
EMAIL_PREFIX = "/api/email/"
UNSANITIZED_FIELDS = frozenset({"password"})

SQL_PATTERNS: List[Pattern[str]] = [
    re.compile(r"(\b|'|\")SELECT(\s+\*|\s+[A-Za-z0-9_]+\s+FROM)", re.I),
    re.compile(r"(\b|'|\")INSERT\s+INTO", re.I),
    re.compile(r"(\b|'|\")UPDATE\s+[A-Za-z0-9_]+\s+SET", re.I),
    re.compile(r"(\b|'|\")DELETE\s+FROM", re.I),
    re.compile(r"(\b|'|\")DROP\s+(TABLE|DATABASE)", re.I),
    re.compile(r"(\b|'|\")UNION\s+(SELECT|ALL)", re.I),
    re.compile(r"(\b|'|\")ALTER\s+(TABLE|DATABASE)", re.I),
    re.compile(r"(\b|'|\")TRUNCATE\s+TABLE", re.I),
    re.compile(r"(\b|'|\")EXEC\s*\(", re.I),
    # Needs a quote or whitespace in front so base64url tokens never match
    re.compile(r"(\s|'|\")--[^\n]*$"),
    re.compile(r";\s*(SELECT|INSERT|UPDATE|DELETE|DROP|ALTER)\b", re.I),
    re.compile(r"/\*.*?\*/", re.S),
    re.compile(r"(\b|'|\")DECLARE\s+@", re.I),
    re.compile(r"(\b|'|\")WAITFOR\s+DELAY", re.I),
    re.compile(r"(\b|'|\")SHUTDOWN\b", re.I),
    re.compile(r"(\b|'|\")INFORMATION_SCHEMA", re.I),
    re.compile(r"\b(SLEEP|BENCHMARK)\s*\(", re.I),
]

XSS_PATTERNS: List[Pattern[str]] = [
    re.compile(r"<script\b", re.I),
    re.compile(r"javascript\s*:", re.I),
    re.compile(r"\bon(error|load|click|mouseover|mouseout|focus|blur|submit)\s*=", re.I),
    re.compile(r"\beval\s*\(", re.I),
    re.compile(r"document\.cookie", re.I),
    re.compile(r"\balert\s*\(", re.I),
]

EMAIL_MALICIOUS_PATTERNS: List[Pattern[str]] = [
    re.compile(r"<script\b", re.I),
    re.compile(r"javascript\s*:", re.I),
    re.compile(r"\bon[a-z]+\s*=\s*['\"]", re.I),
    re.compile(r"<iframe\b", re.I),
    re.compile(r"<object\b", re.I),
    re.compile(r"<embed\b", re.I),
]


def detect_sql(value: str) -> bool:
    return any(p.search(value) for p in SQL_PATTERNS)


def detect_xss(value: str) -> bool:
    return any(p.search(value) for p in XSS_PATTERNS)


def looks_like_schema(value: Any) -> bool:
    """Table, column and relationship definitions legitimately carry SQL fragments"""
    if not isinstance(value, dict):
        return False
    if isinstance(value.get("tables"), list):
        return True
    if value.get("name") and isinstance(value.get("columns"), list):
        return True
    if value.get("name") and value.get("type") and isinstance(value.get("constraints"), (list, str)):
        return True
    return bool(value.get("targetTable") and value.get("type")
                and (value.get("sourceColumn") or value.get("targetColumn")))


@dataclass
class ScanReport:
    fields: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    has_sql: bool = False
    has_xss: bool = False

    @property
    def hit(self) -> bool:
        return self.has_sql or self.has_xss

    def merge(self, prefix: str, other: "ScanReport") -> None:
        for path, found in other.fields.items():
            self.fields[f"{prefix}.{path}" if path else prefix] = found
        self.has_sql = self.has_sql or other.has_sql
        self.has_xss = self.has_xss or other.has_xss


def _children(value: Any):
    if isinstance(value, dict):
        return value.items()
    if isinstance(value, (list, tuple)):
        return enumerate(value)
    return ()


def scan(value: Any, *, check_sql: bool = True, skip_schema: bool = False, path: str = "") -> ScanReport:
    report = ScanReport()

    def visit(node: Any, node_path: str) -> None:
        if isinstance(node, str):
            sql = check_sql and detect_sql(node)
            xss = detect_xss(node)
            if sql or xss:
                report.fields[node_path] = {"value": node[:EXCERPT_LENGTH], "sqlInjection": sql, "xss": xss}
                report.has_sql = report.has_sql or sql
                report.has_xss = report.has_xss or xss
            return
        for key, child in _children(node):
            if skip_schema and looks_like_schema(child):
                continue
            visit(child, f"{node_path}.{key}" if node_path else str(key))

    visit(value, path)
    return report


def scan_email(value: Any) -> Dict[str, Dict[str, Any]]:
    hits: Dict[str, Dict[str, Any]] = {}

    def visit(node: Any, node_path: str) -> None:
        if isinstance(node, str):
            for pattern in EMAIL_MALICIOUS_PATTERNS:
                if pattern.search(node):
                    hits[node_path] = {"value": node[:EXCERPT_LENGTH], "pattern": pattern.pattern}
                    break
            return
        for key, child in _children(node):
            visit(child, f"{node_path}.{key}" if node_path else str(key))

    visit(value, "")
    return hits


def sanitize(value: Any, key: Optional[str] = None) -> Any:
    """HTML-escape every string except password fields; returns a new structure"""
    if isinstance(value, str):
        return value if key in UNSANITIZED_FIELDS else html.escape(value, quote=True)
    if isinstance(value, dict):
        return {k: sanitize(v, k) for k, v in value.items()}
    if isinstance(value, list):
        return [sanitize(v, key) for v in value]
    return value


class InputScanner:
    def __init__(self, clock: Clock, audit: AuditSink, blacklist: IpBlacklist):
        self.clock = clock
        self.audit = audit
        self.blacklist = blacklist

    @staticmethod
    def is_schema_route(path: str) -> bool:
        return path in SCHEMA_PATHS

    @staticmethod
    def is_email_route(path: str) -> bool:
        return path.startswith(EMAIL_PREFIX)

    async def inspect(
        self,
        ctx: RequestContext,
        body: Any,
        query: Dict[str, Any],
        path_segments: List[str],
    ):
        """Return (body, query) as handlers should see them, or raise InputInvalid"""
        if self.is_email_route(ctx.path):
            await self._inspect_email(ctx, body)
            return body, query

        if self.is_schema_route(ctx.path):
            report = scan(body, check_sql=False, skip_schema=True)
            if report.has_xss:
                await self._reject(ctx, SecurityEventType.XSS_ATTEMPT, {"body": report.fields},
                                   "Potential XSS attack detected in schema API")
            logger.debug(f"Schema endpoint {ctx.path}: SQL checks skipped")
            return body, query

        report = ScanReport()
        report.merge("body", scan(body))
        report.merge("query", scan(query))
        report.merge("params", scan(path_segments))

        if report.hit:
            event = SecurityEventType.INJECTION_ATTEMPT if report.has_sql else SecurityEventType.XSS_ATTEMPT
            await self._reject(ctx, event, report.fields, "Potential injection attack detected and blocked")

        return sanitize(body), sanitize(query)

    async def _inspect_email(self, ctx: RequestContext, body: Any) -> None:
        hits = scan_email(body)
        if not hits:
            return
        await self.audit.record(
            SecurityEventType.EMAIL_MALICIOUS_CONTENT,
            ctx=ctx,
            detection={"fields": hits},
            details="Malicious content detected in email API",
        )
        ctx.audited = True
        raise InputInvalid(
            "The email contains potentially malicious content",
            error="Invalid input",
            security_type=SecurityEventType.EMAIL_MALICIOUS_CONTENT,
        )

    async def _reject(self, ctx: RequestContext, event_type: str, fields: Dict[str, Any], details: str) -> None:
        await self.audit.record(event_type, ctx=ctx, detection={"fields": fields}, details=details)
        ctx.audited = True

        if event_type == SecurityEventType.INJECTION_ATTEMPT:
            await self._escalate(ctx)

        raise InputInvalid(
            "The request contains potentially malicious content",
            error="Invalid input",
            security_type=event_type,
        )

    async def _escalate(self, ctx: RequestContext) -> None:
        since = self.clock.now() - ESCALATION_WINDOW
        try:
            attempts = await self.audit.count_events(ctx.ip, SecurityEventType.INJECTION_ATTEMPT, since)
            if attempts >= ESCALATION_THRESHOLD:
                await self.blacklist.add(ctx.ip, ESCALATION_REASON, self.clock.now() + ESCALATION_BAN)
        except SQLAlchemyError as e:
            logger.error(f"Injection escalation failed for {ctx.ip}: {e}")
