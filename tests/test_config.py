"""Tests for pipeline settings."""

from config import Settings


class TestSettings:
    def test_postgres_url_uses_asyncpg(self):
        settings = Settings(database_url="postgresql://app:secret@db:5432/decisions")

        assert settings.database_url == "postgresql+asyncpg://app:secret@db:5432/decisions"

    def test_repr_masks_credentials(self):
        """Should never print passwords or API keys."""
        settings = Settings(
            database_url="postgresql://app:secret@db:5432/decisions",
            redis_url="redis://:hunter2@cache:6379",
            embedding_api_key="nvapi-embed",
            llm_api_key="nvapi-llm",
        )

        text = repr(settings)

        assert "secret" not in text
        assert "hunter2" not in text
        assert "nvapi" not in text
        assert settings.get_embedding_api_key() == "nvapi-embed"
        assert settings.get_llm_api_key() == "nvapi-llm"

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("INSIGHT_COOLDOWN_HOURS", "24")
        monkeypatch.setenv("LLM_ENABLED", "false")

        settings = Settings()

        assert settings.insight_cooldown_hours == 24
        assert settings.llm_enabled is False
