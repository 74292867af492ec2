import os
import tempfile

# server configuration is read at import time
_TMP = tempfile.mkdtemp(prefix="racenight-test-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TMP}/server.db")
os.environ["PAYMENT_PROVIDER"] = "mock"
os.environ["MOCK_SECRET"] = "test-secret"
os.environ["EVENTLOG_BACKEND"] = "pg"
os.environ["INVENTORY_BACKEND"] = "pg"
os.environ.setdefault("ADMIN_USERNAME", "admin")
os.environ.setdefault("ADMIN_PASSWORD", "supasecret")

import pytest  # noqa: E402

from racenight.infra.sql import make_async_engine  # noqa: E402
from racenight.model import inventory  # noqa: E402
from racenight.model.order import Base  # noqa: E402
from racenight.payments import ConfirmedSession, LineItem  # noqa: E402


@pytest.fixture
async def db(tmp_path):
    """(session factory, gated) on a fresh sqlite file."""
    engine, SessionAsync, _, gated = make_async_engine(
        f"sqlite:///{tmp_path}/test.db"
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await inventory.create_schema(conn)
    yield SessionAsync, gated
    await engine.dispose()


@pytest.fixture(scope="session")
def client():
    from fastapi.testclient import TestClient
    from racenight.server import app

    with TestClient(app) as c:
        yield c


def line(description, quantity, amount_total, **kw) -> LineItem:
    return LineItem(description=description, quantity=quantity,
                    amount_total=amount_total, **kw)


def full_cart_session(session_id="cs_test_1", **kw) -> ConfirmedSession:
    """One line of every category; the purchaser covered a $1.55 fee."""
    items = [
        line("2 tickets for Night at the Races", 1, 5000),
        line("Horse sponsorships", 1, 2500),
        line("Program Book Ad - Half Page", 1, 10000,
             detail="Business: Acme Bakery"),
        line("Raffle Tickets", 2, 1000, detail="2 individual tickets"),
        line("Raffle Tickets", 1, 2000, detail="1 books (5 tickets)"),
        line("Cash Donation", 1, 2200),
        line("Processing Fee", 1, 155),
    ]
    defaults = dict(
        id=session_id,
        amount_total=22855,
        amount_subtotal=22700,
        customer_email="jane@example.com",
        payment_intent_id="pi_test_1",
        provider_fee=172,
        metadata={
            "purchaserName": "Jane Q Doe",
            "phone": "555-0100",
            "dancerFamily": "Doe",
            "tableName": "Table 7",
            "horses": '[{"name": "Thunder", "owner": "Jane"}]',
            "programAds": '[{"business": "Acme Bakery", '
                          '"size": "Half Page", "design": "provided"}]',
            "raffleOwners": '[{"name": "Ann", "contact": "ann@x.io", '
                            '"tickets": 3}]',
        },
        line_items=items,
    )
    defaults.update(kw)
    return ConfirmedSession(**defaults)
