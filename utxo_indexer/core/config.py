from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="UTXO_INDEXER_", env_file=".env", extra="ignore")

    MONGO_DETAILS: str = "mongodb://localhost:27017"
    DATABASE_NAME: str = "utxo_indexer"
    # Multi-document transactions need a replica set; standalone servers
    # fall back to the effect journal's compensation.
    MONGO_TRANSACTIONS: bool = False
    MAX_ROLLBACK_DEPTH: int = 2000
    LOG_LEVEL: str = "INFO"
    HOST: str = "0.0.0.0"
    PORT: int = 3000


settings = Settings()
