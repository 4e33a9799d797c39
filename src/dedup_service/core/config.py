"""
Centralized configuration management for the Duplicate Detection service
"""

import os
import json
from typing import Optional, Dict, Any
from dataclasses import dataclass, field
from functools import lru_cache
import logging

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class DatabaseConfig:
    """Database configuration settings"""
    uri: str = field(default_factory=lambda: os.getenv("MONGODB_URI", "mongodb://localhost:27017"))
    name: str = field(default_factory=lambda: os.getenv("DEDUP_DB", "patient_dedup"))
    max_pool_size: int = field(default_factory=lambda: int(os.getenv("MONGO_POOL_SIZE", "50")))
    min_pool_size: int = field(default_factory=lambda: int(os.getenv("MONGO_MIN_POOL_SIZE", "10")))
    max_idle_time_ms: int = field(default_factory=lambda: int(os.getenv("MONGO_MAX_IDLE_TIME_MS", "10000")))
    server_selection_timeout_ms: int = field(default_factory=lambda: int(os.getenv("MONGO_SERVER_SELECTION_TIMEOUT_MS", "5000")))

    # Multi-document transactions need a replica set
    use_transactions: bool = field(default_factory=lambda: _env_bool("MONGO_USE_TRANSACTIONS", "true"))

    # Collection names
    patients_collection: str = "patients"
    candidates_collection: str = "duplicate_candidates"
    audit_collection: str = "audit_log"
    appointments_collection: str = "appointments"
    clinical_documents_collection: str = "clinical_documents"
    prescriptions_collection: str = "prescriptions"
    bills_collection: str = "bills"
    insurance_policies_collection: str = "insurance_policies"

    def dependent_collections(self) -> Dict[str, str]:
        """Dependent-record category -> collection name"""
        return {
            "appointments": self.appointments_collection,
            "clinical_documents": self.clinical_documents_collection,
            "prescriptions": self.prescriptions_collection,
            "bills": self.bills_collection,
            "insurance_policies": self.insurance_policies_collection,
        }


@dataclass
class RedisConfig:
    """Redis configuration settings"""
    host: str = field(default_factory=lambda: os.getenv("REDIS_HOST", "localhost"))
    port: int = field(default_factory=lambda: int(os.getenv("REDIS_PORT", "6379")))
    password: Optional[str] = field(default_factory=lambda: os.getenv("REDIS_PASSWORD"))
    db: int = field(default_factory=lambda: int(os.getenv("REDIS_DB", "0")))
    max_connections: int = field(default_factory=lambda: int(os.getenv("REDIS_POOL_SIZE", "50")))
    socket_timeout: int = field(default_factory=lambda: int(os.getenv("REDIS_SOCKET_TIMEOUT", "30")))
    socket_connect_timeout: int = field(default_factory=lambda: int(os.getenv("REDIS_CONNECT_TIMEOUT", "30")))
    decode_responses: bool = False  # We want bytes for orjson serialization
    default_ttl_seconds: int = field(default_factory=lambda: int(os.getenv("CACHE_DEFAULT_TTL", "3600")))

    # Locking
    merge_lock_ttl_seconds: int = field(default_factory=lambda: int(os.getenv("MERGE_LOCK_TTL_SECONDS", "60")))
    lock_wait_seconds: float = field(default_factory=lambda: float(os.getenv("LOCK_WAIT_SECONDS", "2")))

    # Batch scan checkpoints
    scan_checkpoint_ttl_seconds: int = field(default_factory=lambda: int(os.getenv("SCAN_CHECKPOINT_TTL_SECONDS", "604800")))


@dataclass
class MatchingConfig:
    """Scoring weights, cutoffs and classification thresholds"""
    low_threshold: float = field(default_factory=lambda: float(os.getenv("DEDUP_LOW_THRESHOLD", "0.6")))
    high_threshold: float = field(default_factory=lambda: float(os.getenv("DEDUP_HIGH_THRESHOLD", "0.8")))

    name_weight: float = field(default_factory=lambda: float(os.getenv("NAME_WEIGHT", "0.4")))
    phone_weight: float = field(default_factory=lambda: float(os.getenv("PHONE_WEIGHT", "0.3")))
    dob_weight: float = field(default_factory=lambda: float(os.getenv("DOB_WEIGHT", "0.2")))
    address_weight: float = field(default_factory=lambda: float(os.getenv("ADDRESS_WEIGHT", "0.1")))

    # A field is listed in matched_fields once it clears its cutoff
    name_cutoff: float = field(default_factory=lambda: float(os.getenv("NAME_CUTOFF", "0.75")))
    phone_cutoff: float = field(default_factory=lambda: float(os.getenv("PHONE_CUTOFF", "0.8")))
    address_cutoff: float = field(default_factory=lambda: float(os.getenv("ADDRESS_CUTOFF", "0.7")))

    # Candidate retrieval
    prefilter_name_bar: float = field(default_factory=lambda: float(os.getenv("PREFILTER_NAME_BAR", "0.2")))
    phone_suffix_length: int = 6
    candidate_limit: int = field(default_factory=lambda: int(os.getenv("CANDIDATE_LIMIT", "50")))
    retrieval_fetch_limit: int = field(default_factory=lambda: int(os.getenv("RETRIEVAL_FETCH_LIMIT", "500")))

    def __post_init__(self):
        errors = self.validate()
        if errors:
            raise ValueError(f"Matching configuration invalid: {'; '.join(errors)}")

    @property
    def weights(self) -> Dict[str, float]:
        return {
            "name": self.name_weight,
            "phone": self.phone_weight,
            "dob": self.dob_weight,
            "address": self.address_weight,
        }

    def validate(self) -> list:
        errors = []
        if not (0.0 <= self.low_threshold <= self.high_threshold <= 1.0):
            errors.append("thresholds must satisfy 0 <= low <= high <= 1")
        if abs(sum(self.weights.values()) - 1.0) > 1e-6:
            errors.append("field weights must sum to 1.0")
        if any(w < 0 for w in self.weights.values()):
            errors.append("field weights cannot be negative")
        if self.candidate_limit <= 0:
            errors.append("candidate_limit must be positive")
        if self.retrieval_fetch_limit < self.candidate_limit:
            errors.append("retrieval_fetch_limit must be >= candidate_limit")
        return errors


@dataclass
class LoggingConfig:
    """Logging configuration settings"""
    level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    format: str = field(default_factory=lambda: os.getenv("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"))

    # File logging
    log_file: Optional[str] = field(default_factory=lambda: os.getenv("LOG_FILE"))
    max_file_size: int = field(default_factory=lambda: int(os.getenv("LOG_MAX_FILE_SIZE", "10485760")))  # 10MB
    backup_count: int = field(default_factory=lambda: int(os.getenv("LOG_BACKUP_COUNT", "5")))


@dataclass
class PerformanceConfig:
    """Request budgets and batch sizes"""
    # check() blocks the registration form
    detection_timeout_seconds: float = field(default_factory=lambda: float(os.getenv("DETECTION_TIMEOUT_SECONDS", "0.8")))

    # Batch processing
    scan_batch_size: int = field(default_factory=lambda: int(os.getenv("SCAN_BATCH_SIZE", "200")))


@dataclass
class ApplicationConfig:
    """Main application configuration"""
    app_name: str = field(default_factory=lambda: os.getenv("APP_NAME", "Patient Dedup Service"))
    app_version: str = field(default_factory=lambda: os.getenv("APP_VERSION", "1.0.0"))
    environment: str = field(default_factory=lambda: os.getenv("ENVIRONMENT", "development"))
    debug: bool = field(default_factory=lambda: _env_bool("DEBUG", "false"))

    # Server settings
    host: str = field(default_factory=lambda: os.getenv("HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: int(os.getenv("PORT", "8000")))

    # Component configurations
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    performance: PerformanceConfig = field(default_factory=PerformanceConfig)

    def __post_init__(self):
        """Validate configuration after initialization"""
        self.validate()

    def validate(self):
        """Validate configuration settings"""
        errors = []

        if not self.database.uri:
            errors.append("Database URI is required")
        if not self.database.name:
            errors.append("Database name is required")

        if not self.redis.host:
            errors.append("Redis host is required")
        if not (1 <= self.redis.port <= 65535):
            errors.append("Redis port must be between 1 and 65535")
        if self.redis.merge_lock_ttl_seconds <= 0:
            errors.append("Merge lock TTL must be positive")

        if self.performance.detection_timeout_seconds <= 0:
            errors.append("Detection timeout must be positive")
        if self.performance.scan_batch_size <= 0:
            errors.append("Scan batch size must be positive")

        if errors:
            raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary (for logging/debugging)"""
        config_dict = {}
        for field_name, field_value in self.__dict__.items():
            if hasattr(field_value, '__dict__'):
                config_dict[field_name] = field_value.__dict__.copy()
                if field_name == 'redis' and config_dict[field_name].get('password'):
                    config_dict[field_name]['password'] = '***masked***'
            else:
                config_dict[field_name] = field_value
        return config_dict


@lru_cache(maxsize=1)
def get_config() -> ApplicationConfig:
    """
    Get application configuration singleton.
    Uses LRU cache to ensure same instance is returned.
    """
    config = ApplicationConfig()
    logger.info(f"Configuration loaded for environment: {config.environment}")
    return config


def load_config_from_file(file_path: str) -> ApplicationConfig:
    """
    Load configuration from a JSON file.
    Values are exported as environment variables, then the cached config is rebuilt.
    """
    try:
        with open(file_path, 'r') as f:
            config_data = json.load(f)

        for key, value in config_data.items():
            if isinstance(value, dict):
                for sub_key, sub_value in value.items():
                    os.environ[sub_key.upper()] = str(sub_value)
            else:
                os.environ[key.upper()] = str(value)

        get_config.cache_clear()
        return get_config()

    except FileNotFoundError:
        logger.error(f"Configuration file not found: {file_path}")
        raise
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON in configuration file: {e}")
        raise


def get_database_config() -> DatabaseConfig:
    """Get database configuration"""
    return get_config().database


def get_redis_config() -> RedisConfig:
    """Get Redis configuration"""
    return get_config().redis

