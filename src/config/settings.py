# src/config/settings.py
from pydantic_settings import BaseSettings
from pathlib import Path
from typing import Optional

# Get project root (2 levels up from this file)
PROJECT_ROOT = Path(__file__).parent.parent.parent

class Settings(BaseSettings):
    # OpenAI
    openai_api_key: Optional[str] = None
    openai_embedding_model: str = "text-embedding-3-small"
    openai_llm_model: str = "gpt-4o-mini"
    
    # SQL Server (record store)
    sql_server_host: str
    sql_server_port: int = 1433
    sql_server_database: str
    sql_server_username: str
    sql_server_password: str
    
    # PostgreSQL + pgvector (retrieval index, optional)
    postgres_host: Optional[str] = None
    postgres_port: int = 5432
    postgres_database: Optional[str] = None
    postgres_username: Optional[str] = None
    postgres_password: Optional[str] = None
    postgres_sslmode: str = "require"
    
    # Classifier
    prompt_version: str = "v1"
    classifier_temperature: float = 0.1
    classifier_retry_temperature: float = 0.05
    classifier_max_tokens: int = 500
    
    # Retrieval / evaluation
    embedding_dimension: int = 1536
    recall_top_k: int = 3
    search_limit: int = 5
    failing_cases_limit: int = 10
    
    log_level: str = "INFO"
    
    class Config:
        env_file = str(PROJECT_ROOT / ".env")
        case_sensitive = False
