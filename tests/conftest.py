"""
Shared fixtures: in-memory project documents and a throwaway SQLite database.
"""

import asyncio

import httpx
import pytest

from offer_analysis.document import ProjectDocument
from offer_analysis.models import NegotiationDecision
from offer_analysis.projects_db import database
from offer_analysis.projects_db.main import app
from offer_analysis import lifecycle


@pytest.fixture
def document():
    """Default project: one lot, default weighting (Prix 40 / Technique 40 / Env 10 / Planning 10)"""
    return ProjectDocument()


@pytest.fixture
def lot(document):
    """Default lot with three named companies: 1 Alpha, 2 Bravo, 3 Charlie"""
    lot = document.current_lot
    document.update_company(lot, 1, "Alpha")
    document.add_company(lot, "Bravo")
    document.add_company(lot, "Charlie")
    return lot


@pytest.fixture
def version(lot):
    return lot.current_version


@pytest.fixture
def set_base_prices(lot):
    """Write base (line 0) amounts: set_base_prices({1: 100, 2: 120})"""
    def _set(prices, version_id=None):
        for company_id, amount in prices.items():
            lifecycle.set_price_entry(lot, version_id or lot.current_version_id, company_id, 0, dpgf1=amount)
    return _set


@pytest.fixture
def decide(lot):
    """Write decisions on the current version: decide({1: RETAINED})"""
    def _decide(decisions, version_id=None):
        for company_id, decision in decisions.items():
            lifecycle.set_negotiation_decision(
                lot, version_id or lot.current_version_id, company_id, NegotiationDecision(decision)
            )
    return _decide


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    """Point the persistence service at an empty database file"""
    path = str(tmp_path / "analyses.db")
    monkeypatch.setattr(database, "DATABASE_PATH", path)
    asyncio.run(database.init_db())
    return path


@pytest.fixture
def asgi_client_factory(db_path):
    """httpx.AsyncClient wired to the service in-process (create inside the running loop)"""
    def _factory():
        return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")
    return _factory
