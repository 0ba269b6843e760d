from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, SecretStr


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Providers
    OPENAI_API_KEY: SecretStr | None = Field(None, description="OpenAI API Key")
    OPENAI_MODEL_STRUCTURED: str = Field(
        "gpt-4o-mini",
        description="Model used for fact extraction and fingerprint classification"
    )
    OPENAI_EMBEDDING_MODEL: str = Field(
        "text-embedding-3-small",
        description="Model for embeddings"
    )

    # Storage
    DATABASE_URL: str = Field("sqlite:///data/mnemos.db", description="SQLAlchemy database URL")
    LOG_LEVEL: str = Field("INFO", description="Root log level")

    # Fingerprinting
    FINGERPRINT_USE_MODEL: bool = Field(
        True,
        description="Fall back to the model classifier when no deterministic rule matches"
    )
    FINGERPRINT_TIMEOUT_SECONDS: float = Field(2.0, description="Wall-time cap for model classification")
    FINGERPRINT_MIN_CONFIDENCE: float = Field(0.7, description="Minimum confidence for a fingerprint to supersede")

    # Storage writer
    COMPRESSION_USE_MODEL: bool = Field(True, description="Use the model to extract facts before post-processing")
    COMPRESSION_TIMEOUT_SECONDS: float = Field(8.0, description="Timeout for model fact extraction")
    MAX_FACT_LINES: int = Field(5, description="Maximum fact lines kept per memory")
    MIN_FACT_WORDS: int = Field(3, description="Lines with fewer words are dropped as noise")
    MAX_FACT_WORDS: int = Field(30, description="Lines are cut to this many words")
    DEDUP_DISTANCE_THRESHOLD: float = Field(0.15, description="Cosine distance below which a new fact is a duplicate")
    DEDUP_RECENT_LIMIT: int = Field(25, description="Recent memories compared during semantic dedup")
    DEDUP_EMBED_TIMEOUT_SECONDS: float = Field(3.0, description="Timeout for the write-path dedup embedding")
    SUPERSESSION_MAX_RETRIES: int = Field(3, description="Retries for conflicting supersession transactions")

    # Embeddings
    EMBEDDING_TIMEOUT_SECONDS: float = Field(5.0, description="Timeout for an embedding request")
    EMBEDDING_MAX_RETRIES: int = Field(2, description="Client retries for an embedding request")
    EMBEDDING_MAX_CHARS: int = Field(8000, description="Content is truncated to this length before embedding")
    EMBEDDING_WORKERS: int = Field(2, description="Background embedding threads")

    # Retrieval
    RETRIEVAL_CANDIDATE_POOL: int = Field(500, description="Maximum rows pulled by the SQL prefilter")
    RETRIEVAL_MAX_RESULTS: int = Field(15, description="Hard cap on injected memories")
    RETRIEVAL_DEFAULT_TOKEN_BUDGET: int = Field(2500, description="Memory token budget when the caller gives none")
    KEYWORD_BOOST: float = Field(0.10, description="Bonus for shared salient nouns")
    ENTITY_BOOST: float = Field(1.0, description="Bonus for a named-entity match")
    ORDINAL_MATCH_BOOST: float = Field(0.6, description="Bonus for a matching ordinal anchor")
    ORDINAL_MISMATCH_PENALTY: float = Field(0.3, description="Penalty for a conflicting ordinal anchor")
    EXPLICIT_RECALL_BOOST: float = Field(0.9, description="Bonus for memories the user asked to remember")
    EXPLICIT_RECALL_MIN_BASE: float = Field(0.2, description="Base score needed before the explicit-recall bonus applies")
    SAFETY_BOOST: float = Field(0.5, description="Bonus for safety-relevant memories on safety-triggering queries")
    SAFETY_INJECTION_LIMIT: int = Field(3, description="Safety memories pinned into a result")
    QUERY_CACHE_SIZE: int = Field(256, description="Cached query embeddings")
    QUERY_CACHE_TTL_SECONDS: int = Field(300, description="Lifetime of a cached query embedding")

    # Context budget
    BUDGET_MEMORY_TOKENS: int = Field(2500, description="Ceiling for the memory section")
    BUDGET_DOCUMENT_TOKENS: int = Field(3000, description="Ceiling for the document section")
    BUDGET_VAULT_TOKENS: int = Field(9000, description="Ceiling for the vault section")
    BUDGET_EXTERNAL_TOKENS: int = Field(1500, description="Ceiling for the external-facts section")
    BUDGET_TOTAL_TOKENS: int = Field(15000, description="Global context ceiling")
    CONTEXT_PRECEDENCE: str = Field(
        "memory,document,external,vault",
        description="Comma-separated source order, highest priority first"
    )
    TOKEN_COUNTER: str = Field("tiktoken", description="'tiktoken' or 'chars'")
    TOKEN_ENCODING: str = Field("cl100k_base", description="tiktoken encoding name")


# Singleton instance
settings = Settings()
