"""Fixtures pour les tests d'intégration API."""

from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from compta_obra.context import build_context


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch, fake_provider) -> TestClient:
    """TestClient FastAPI avec configuration de test et fournisseur en mémoire."""
    config_dir = str(Path(__file__).parent.parent / "fixtures" / "config")
    monkeypatch.setenv("CONFIG_DIR", config_dir)
    monkeypatch.setenv("DATABASE_PATH", ":memory:")

    import api.app.main as app_main

    def _build(config, provider=None, database_path=None):
        return build_context(config, provider=fake_provider, database_path=database_path)

    monkeypatch.setattr(app_main, "build_context", _build)

    with TestClient(app_main.app) as c:
        yield c


@pytest.fixture
def ledger_files() -> list[tuple[str, tuple[str, bytes, str]]]:
    """Exports du registre pour upload multipart."""
    fixtures = Path(__file__).parent.parent / "fixtures" / "registro"
    return [
        ("files", ("gastos.csv", (fixtures / "gastos.csv").read_bytes(), "text/csv")),
        ("files", ("ventas.csv", (fixtures / "ventas.csv").read_bytes(), "text/csv")),
    ]
