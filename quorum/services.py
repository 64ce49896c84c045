"""Wires every component onto one engine and one clock."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.engine import Engine

from quorum.accounts import AccountService
from quorum.approvals import ApprovalEngine
from quorum.audit import HistoryLog
from quorum.db import create_db_engine, init_schema, utc_now
from quorum.membership import MembershipRegistry
from quorum.override import AdminOverride
from quorum.recovery import RecoveryService
from quorum.tokens import TokenVersionGuard
from quorum.trust import TrustRegistry


@dataclass
class Services:
    engine: Engine
    history: HistoryLog
    tokens: TokenVersionGuard
    registry: MembershipRegistry
    approvals: ApprovalEngine
    trust: TrustRegistry
    recovery: RecoveryService
    accounts: AccountService
    override: AdminOverride


def build_services(
    engine: Optional[Engine] = None,
    clock: Callable = utc_now,
    create_schema: bool = True,
) -> Services:
    engine = engine or create_db_engine()
    if create_schema:
        init_schema(engine)
    history = HistoryLog(engine, clock=clock)
    tokens = TokenVersionGuard(engine, clock=clock)
    registry = MembershipRegistry(engine, history, clock=clock)
    approvals = ApprovalEngine(engine, history, registry, tokens, clock=clock)
    trust = TrustRegistry(engine, history, clock=clock)
    recovery = RecoveryService(engine, history, trust, approvals, clock=clock)
    accounts = AccountService(engine, history, tokens, approvals, clock=clock)
    override = AdminOverride(engine, history, tokens, registry, approvals, recovery)
    return Services(
        engine=engine,
        history=history,
        tokens=tokens,
        registry=registry,
        approvals=approvals,
        trust=trust,
        recovery=recovery,
        accounts=accounts,
        override=override,
    )
