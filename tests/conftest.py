"""
Pytest configuration and fixtures.
"""

from decimal import Decimal
from typing import Dict, Optional

import pytest
import os
from unittest.mock import patch

from src.partfinder.catalog import Catalog, CatalogItem, Fitment
from src.partfinder.extract import ExtractionResult, ParsedQuery


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PORT": "4000",
        "LOG_LEVEL": "DEBUG",
        "OPENAI_API_KEY": "",
        "OPENAI_MODEL": "gpt-3.5-turbo",
        "CATALOG_PATH": "products.json",
        "COMPANY_NAME": "Auto Parts Finder",
        "MAX_CHOICES": "5",
        "DIGIT_TIMEOUT_SECONDS": "12",
        "SESSION_TTL_SECONDS": "3600",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.partfinder.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


class FakeExtractor:
    """Extractor double: canned queries keyed by utterance, failure otherwise."""

    def __init__(self, replies: Optional[Dict[str, dict]] = None):
        self.replies = replies or {}
        self.calls = []

    @property
    def is_enabled(self) -> bool:
        return True

    async def extract(self, utterance: str) -> ExtractionResult:
        self.calls.append(utterance)
        reply = self.replies.get(utterance)
        if reply is None:
            return ExtractionResult.failed("no canned reply")
        return ExtractionResult(success=True, query=ParsedQuery(**reply))


def _item(title, part_type, price, *fits):
    return CatalogItem(
        title=title,
        part_type=part_type,
        price=Decimal(price),
        fits=tuple(Fitment(year=y, make=mk, model=md) for y, mk, md in fits),
    )


@pytest.fixture
def sample_catalog() -> Catalog:
    """Small catalog covering the fitment and text matching rules."""
    return Catalog(
        items=(
            _item("Brake Pad Set", "Brake Pads", "49.99", ("2018", "Toyota", "Camry")),
            _item(
                "Oil Filter",
                "oil filter",
                "8.99",
                ("2017", "Toyota", "Corolla"),
                ("2018", "Honda", "Civic"),
            ),
            _item("Engine Air Filter", "air filter", "19.95", ("2018", "Honda", "Accord")),
            _item("Front Brake Rotor", "brake rotor", "72.00", ("2019", "Toyota", "Camry")),
        )
    )


@pytest.fixture
def camry_extractor() -> FakeExtractor:
    return FakeExtractor(
        {
            "2018 Toyota Camry brake pads": {
                "year": "2018",
                "make": "Toyota",
                "model": "Camry",
                "item": "brake pads",
                "extras": [],
            },
            "toyota filters": {"make": "Toyota", "item": "filter"},
            "honda filter": {"make": "Honda", "item": "filter"},
            "a boat anchor": {"item": "anchor"},
        }
    )


@pytest.fixture
def make_extractor():
    """Build a FakeExtractor with custom canned replies."""
    return FakeExtractor
