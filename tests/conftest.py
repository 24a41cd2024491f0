"""Shared fixtures."""
import pytest
from unittest.mock import Mock
from datetime import datetime, timezone
from src.config.settings import Settings
from src.models.schemas import FeedbackRecord


def make_config(**overrides):
    """Build a Settings mock with every field the application reads."""
    config = Mock(spec=Settings)
    config.openai_api_key = "test-api-key"
    config.openai_embedding_model = "text-embedding-3-small"
    config.openai_llm_model = "gpt-4o-mini"
    config.sql_server_host = "test-server"
    config.sql_server_port = 1433
    config.sql_server_database = "test-db"
    config.sql_server_username = "test-user"
    config.sql_server_password = "test-pass"
    config.postgres_host = None
    config.postgres_port = 5432
    config.postgres_database = None
    config.postgres_username = None
    config.postgres_password = None
    config.postgres_sslmode = "require"
    config.prompt_version = "v1"
    config.classifier_temperature = 0.1
    config.classifier_retry_temperature = 0.05
    config.classifier_max_tokens = 500
    config.embedding_dimension = 1536
    config.recall_top_k = 3
    config.search_limit = 5
    config.failing_cases_limit = 10
    config.log_level = "INFO"
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


@pytest.fixture
def mock_config():
    """Configuration without a vector index."""
    return make_config()


@pytest.fixture
def indexed_config():
    """Configuration with a vector index."""
    return make_config(
        postgres_host="pg-host",
        postgres_database="vectors",
        postgres_username="pg-user",
        postgres_password="pg-pass"
    )


@pytest.fixture
def sample_feedback():
    return FeedbackRecord(
        id="fb001",
        source="github issue",
        title="Deploy fails with 500",
        body="Every deploy returns a 500 error since this morning.",
        customer_tier="Enterprise",
        created_at=datetime(2025, 1, 6, 9, 12, tzinfo=timezone.utc)
    )


@pytest.fixture
def config_factory():
    """Build a configuration with selected fields overridden."""
    return make_config
