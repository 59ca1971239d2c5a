from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker

from prytaneum.models import Activity, Base, Contact, Investor, Meeting
from prytaneum.registry import build_registry
from prytaneum.tools import ToolContext
from prytaneum.utils import today

USER_ID = "3f0c2a9e-6a57-4c11-9d0e-1a2b3c4d5e6f"


# ---------------------------------------------------------------------------
# Fixtures: in-memory SQLite database
# ---------------------------------------------------------------------------

@pytest.fixture()
def engine():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session(engine):
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = SessionLocal()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def ctx(session: Session) -> ToolContext:
    return ToolContext(session=session, user_id=USER_ID)


@pytest.fixture(scope="session")
def registry():
    return build_registry()


def make_investor(session: Session, firm_name: str, **kwargs) -> Investor:
    defaults = {
        "relationship_owner": "Dana Whitfield",
        "stage": "Initial Contact",
        "stage_entry_date": today() - timedelta(days=10),
        "last_action_date": today() - timedelta(days=3),
    }
    inv = Investor(firm_name=firm_name, **{**defaults, **kwargs})
    session.add(inv)
    session.commit()
    return inv


@pytest.fixture()
def sequoia(session: Session) -> Investor:
    inv = make_investor(
        session, "Sequoia Capital",
        stage="Active Due Diligence", est_value=5_000_000,
        internal_conviction="High", current_strategy_notes="Lead with the infra thesis",
        key_objection_risk="Fund size vs. their minimum ticket",
    )
    session.add(Contact(
        investor_id=inv.id, name="Priya Raman", title="Partner",
        email="priya@sequoia.example", phone="+1-555-0100", is_primary=True,
    ))
    session.commit()
    return inv


@pytest.fixture()
def acme_pair(session: Session) -> tuple[Investor, Investor]:
    return make_investor(session, "Acme Ventures"), make_investor(session, "Acme Capital")


def count_rows(session: Session) -> dict[str, int]:
    """Row counts per table, for asserting that nothing was written."""
    return {
        model.__tablename__: session.execute(select(func.count()).select_from(model)).scalar_one()
        for model in (Investor, Contact, Activity, Meeting)
    }
