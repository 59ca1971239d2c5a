"""Tests for session lifecycle helpers."""
from __future__ import annotations

import pytest
from sqlalchemy import func, select

from prytaneum.db import init_db, session_generator, session_scope
from prytaneum.models import Investor


@pytest.fixture()
def db(tmp_path):
    init_db(f"sqlite:///{tmp_path / 'scope.db'}")


def _investor_count() -> int:
    with session_scope() as session:
        return session.scalar(select(func.count()).select_from(Investor))


class TestSessionScope:
    def test_commit_persists(self, db):
        with session_scope() as session:
            session.add(Investor(firm_name="Index Ventures", stage="Initial Contact", relationship_owner="Dana Whitfield"))
            session.commit()
        assert _investor_count() == 1

    def test_error_rolls_back_and_propagates(self, db):
        with pytest.raises(RuntimeError):
            with session_scope() as session:
                session.add(Investor(firm_name="Index Ventures", stage="Initial Contact", relationship_owner="Dana Whitfield"))
                session.flush()
                raise RuntimeError("boom")
        assert _investor_count() == 0

    def test_generator_yields_one_session(self, db):
        gen = session_generator()
        session = next(gen)
        session.add(Investor(firm_name="Benchmark", stage="Materials Shared", relationship_owner="Dana Whitfield"))
        session.commit()
        with pytest.raises(StopIteration):
            next(gen)
        assert _investor_count() == 1
