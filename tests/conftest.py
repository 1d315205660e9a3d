from __future__ import annotations

import pytest

from mce import observability


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    monkeypatch.setenv("MCE_TOKENIZER", "heuristic")
    monkeypatch.setenv("MCE_LOG_LEVEL", "WARNING")
    for name in (
        "OPENAI_API_KEY",
        "ANTHROPIC_API_KEY",
        "MCE_DATA_DIR",
        "MCE_EMBED_PROVIDER",
        "MCE_LLM_PROVIDER",
        "MCE_ENFORCE_UNIQUE_CURRENT",
    ):
        monkeypatch.delenv(name, raising=False)
    yield
    observability.reset_logging()
