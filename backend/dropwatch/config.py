from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    DATABASE_URL: str = "sqlite:///./dropwatch.db"
    LOG_LEVEL: str = "INFO"
    # Connection pool (ignored for sqlite)
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    # Drop detection (seconds)
    TAU_SHORT_SECONDS: int = 60
    MICRO_DROP_FACTOR: float = 1.2  # gaps up to tau_short × factor are micro-drops
    EXTENDED_GAP_SECONDS: int = 600  # beyond this the vehicle is treated as inactive
    # Trip segmentation: inactivity gap that closes a trip
    TRIP_GAP_MINUTES: int = 20
    # Spatial cell resolution for corridor endpoints
    H3_RESOLUTION: int = 7
    # Traversal quality filters
    MIN_TRAVERSAL_DISTANCE_M: float = 10.0
    MAX_TRAVERSAL_SPEED_KMH: float = 200.0
    # Baselines
    MIN_SAMPLES_FOR_HOURLY: int = 5
    # Alerting
    DELAY_THRESHOLD_MINUTES: int = 15
    # Instability weights (heatmap)
    INSTABILITY_WEIGHT_SHORT: float = 1.0
    INSTABILITY_WEIGHT_LONG: float = 3.0
    # Read-modify-write retries per traversal before reporting a transient failure
    STORE_MAX_RETRIES: int = 3
    # Parallel vehicle lanes per ingestion batch
    INGEST_MAX_WORKERS: int = 4
    # Upload and query limits
    MAX_UPLOAD_SIZE_MB: int = 50
    MAX_QUERY_LIMIT: int = 500
    # CORS origins (comma-separated string for env var support)
    CORS_ORIGINS: str = "http://localhost:3000"


settings = Settings()
