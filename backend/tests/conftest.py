"""
Pytest configuration for backend tests.

Shared fixtures and configuration for all tests.
"""
import os
import sys
import tempfile
from pathlib import Path

import pytest

# Add backend directory to path for imports
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

# Settings are read once at import; configure them before anything imports storybible
os.environ.setdefault("STORYBIBLE_RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("STORYBIBLE_DUMMY_MODE", "true")
os.environ.setdefault("STORYBIBLE_DATA_DIR", tempfile.mkdtemp(prefix="storybible-tests-"))

from storybible.pipeline.models import Character, EntityCollections, Faction, Location


# Register integration marker for real LLM tests
def pytest_configure(config):
    """Register custom pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests requiring real LLM (deselect with '-m \"not integration\"')",
    )


# ============================================================================
# SHARED FIXTURES FOR ALL TESTS
# ============================================================================

SAMPLE_DOCUMENT = (
    "Aria of Stonehaven drew the Moonblade as the Silver Order marched on the city. "
    "Borin, her old mentor, had warned her about the Sundering. "
) * 12


# --- Database Fixtures ---
@pytest.fixture
def temp_db_path(tmp_path: Path) -> Path:
    """Provide a temporary archive path for isolated testing."""
    return tmp_path / "index" / "results.sqlite3"


# --- Document Fixtures ---
@pytest.fixture
def sample_document() -> str:
    return SAMPLE_DOCUMENT


# --- Collection Fixtures ---
@pytest.fixture
def eldoria_collections() -> EntityCollections:
    """Collections where "Eldoria" is both a location and a faction."""
    return EntityCollections(
        characters=[Character(id="CHR0001", name="Aria", role="protagonist")],
        locations=[
            Location(id="LOC0001", name="Eldoria", location_type="kingdom"),
            Location(id="LOC0002", name="Stonehaven", location_type="city"),
        ],
        factions=[
            Faction(id="FAC0001", name="eldoria", description="The ruling houses of Eldoria", leader="Queen Maren"),
        ],
    )
