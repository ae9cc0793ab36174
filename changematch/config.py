"""
Configuration module for the ChangeMatch service.

Loads environment variables and provides configuration singletons.
Uses pydantic for validation.
"""

from pydantic_settings import BaseSettings
from typing import Literal, Optional


class Config(BaseSettings):
    """
    Application configuration loaded from environment variables.

    All values come from .env file or system environment.
    Type hints provide validation (pydantic converts types automatically).
    """

    # ============================================================
    # STORAGE CONFIGURATION
    # ============================================================
    STORAGE_BACKEND: Literal["firestore", "memory"] = "firestore"
    """Where requests and matches live. 'memory' is for local runs and tests."""

    FIREBASE_PROJECT_ID: Optional[str] = None
    """Firebase project ID. Required when STORAGE_BACKEND=firestore."""

    GOOGLE_APPLICATION_CREDENTIALS: str = "/config/serviceAccountKey.json"
    """Path to Firebase service account JSON file."""

    # ============================================================
    # SPATIAL INDEX
    # ============================================================
    GEOHASH_PRECISION: int = 5
    """Spatial key length. 5 = roughly 4.9km x 4.9km cells at the equator."""

    MAX_DISTANCE_KM: float = 5.0
    """Search radius for reciprocal candidates."""

    MAX_CANDIDATES: int = 100
    """Maximum requests to fetch from storage per spatial key bucket."""

    TOP_MATCHES: int = 10
    """How many ranked candidates the matching graph returns."""

    # ============================================================
    # RANKING WEIGHTS
    # ============================================================
    DISTANCE_BASE: float = 100.0
    """Points for a candidate at zero distance."""

    DISTANCE_PENALTY_PER_KM: float = 20.0
    """Points lost per kilometer of distance."""

    VERIFIED_BONUS: float = 50.0
    """Points for a verified counterpart."""

    RATING_WEIGHT: float = 10.0
    """Points per star of counterpart rating (0-5)."""

    FRESHNESS_HOURS: float = 20.0
    """Freshness bonus for a brand new post, decaying one point per hour."""

    PRIORITIZE_VERIFIED: bool = True
    """Apply the verified bonus when ranking."""

    PRIORITIZE_HIGH_RATED: bool = True
    """Apply the rating term when ranking."""

    # ============================================================
    # MATCH LIFECYCLE
    # ============================================================
    MATCH_COOLDOWN_MINUTES: float = 2.0
    """Minimum gap between two proposals from the same requester to the same counterpart."""

    CAS_MAX_RETRIES: int = 3
    """Attempts at a match transition before a lost race surfaces as a conflict."""

    # ============================================================
    # GRAPH CONFIGURATION
    # ============================================================
    GRAPH_TIMEOUT: int = 30
    """Maximum seconds any single graph step may run before the graph fails. Default: 30 seconds."""

    # ============================================================
    # SECURITY CONFIGURATION
    # ============================================================
    SERVICE_TOKEN: str = ""
    """Shared secret for authenticating requests from the app backend."""

    # ============================================================
    # SERVER CONFIGURATION
    # ============================================================
    PORT: int = 8000
    """Port to run FastAPI server on. Default: 8000."""

    HOST: str = "0.0.0.0"
    """Host to bind to. 0.0.0.0 = accessible from network."""

    DEBUG: bool = False
    """Enable debug logging. Set True for development, False for production."""

    class Config:
        """Pydantic configuration."""
        env_file = ".env"  # Read from .env file
        case_sensitive = True  # Variable names are case-sensitive
        extra = "ignore"  # Ignore extra env vars not defined above


# ============================================================
# SINGLETON INSTANCE
# ============================================================
# Load config once at startup, reuse throughout app
config = Config()


# ============================================================
# VALIDATION AT STARTUP
# ============================================================
def validate_config() -> dict:
    """
    Validate that required config values are set.

    Called at app startup to fail fast if config is incomplete.

    Returns:
        dict: Status of each checked field

    Raises:
        ValueError: If required config is missing or out of range
    """
    errors = []

    if config.STORAGE_BACKEND == "firestore" and not config.FIREBASE_PROJECT_ID:
        errors.append("FIREBASE_PROJECT_ID is required when STORAGE_BACKEND=firestore")

    if not 1 <= config.GEOHASH_PRECISION <= 12:
        errors.append("GEOHASH_PRECISION must be between 1 and 12")

    if config.MAX_DISTANCE_KM <= 0:
        errors.append("MAX_DISTANCE_KM must be positive")

    if config.CAS_MAX_RETRIES < 1:
        errors.append("CAS_MAX_RETRIES must be at least 1")

    if errors:
        raise ValueError(f"Configuration errors:\n" + "\n".join([f"  - {e}" for e in errors]))

    return {
        "storage": config.STORAGE_BACKEND,
        "firebase": "✓ Configured" if config.FIREBASE_PROJECT_ID else "✗ Not set",
        "precision": str(config.GEOHASH_PRECISION),
        "radius_km": str(config.MAX_DISTANCE_KM),
    }


if __name__ == "__main__":
    """Allow testing config by running: python -m changematch.config"""
    try:
        status = validate_config()
        print("✅ Configuration is valid!")
        print("\nConfiguration Status:")
        for key, value in status.items():
            print(f"  {key}: {value}")
    except ValueError as e:
        print(f"❌ Configuration error:\n{e}")
        exit(1)
