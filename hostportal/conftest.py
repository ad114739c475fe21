# hostportal/conftest.py
import sys
import pytest
from pathlib import Path

# Add repository root to PYTHONPATH
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


@pytest.fixture(scope="function", autouse=True)
def db():
    """
    Fresh in-memory SQLite database per test.

    Every test starts with empty tables; the engine is disposed afterwards.
    """
    from hostportal.core.database import init_engine, create_all_tables, dispose_engine

    init_engine("sqlite://")
    create_all_tables()
    yield
    dispose_engine()


@pytest.fixture
def plans(db):
    """Seed the default plan catalog; returns plans keyed by name."""
    from hostportal.features.dns_plans.catalog import seed_plans

    return {p.name: p for p in seed_plans()}


@pytest.fixture
def make_user(db):
    """Factory for app_users rows (linked to a token account by default)."""
    from sqlalchemy import insert
    from hostportal.core.database import get_db_session, users

    def _make(user_id: str = "user_alice", token_relation_id="vf-alice"):
        with get_db_session() as session:
            session.execute(
                insert(users).values(
                    user_id=user_id,
                    display_name=user_id,
                    token_relation_id=token_relation_id,
                    status="active",
                )
            )
        return user_id

    return _make


@pytest.fixture
def add_domains(db):
    """Factory for dns_domains rows; returns the created ids in order."""
    from sqlalchemy import insert
    from hostportal.core.database import get_db_session, dns_domains

    def _add(user_id: str, names, external_ids=None):
        ids = []
        with get_db_session() as session:
            for i, name in enumerate(names):
                external_id = external_ids[i] if external_ids else None
                result = session.execute(
                    insert(dns_domains).values(user_id=user_id, name=name, external_id=external_id)
                )
                ids.append(int(result.inserted_primary_key[0]))
        return ids

    return _add


@pytest.fixture
def token_account():
    from hostportal.tests.mocks import FakeTokenAccount

    return FakeTokenAccount()


@pytest.fixture
def dns_host():
    from hostportal.tests.mocks import FakeDnsHost

    return FakeDnsHost()
