from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_DATA_ROOT = Path("./data")
DEFAULT_LOGS_SUBDIR = "logs"
SECRET_KEY_ENV = "DATASOURCE_SECRET_KEY"
GOOGLE_CLIENT_ID_ENV = "GOOGLE_CLIENT_ID"
GOOGLE_CLIENT_SECRET_ENV = "GOOGLE_CLIENT_SECRET"
GOOGLE_REDIRECT_URI_ENV = "GOOGLE_REDIRECT_URI"
JOB_CONCURRENCY_ENV = "JOB_QUEUE_CONCURRENCY"
JOB_HISTORY_ENV = "JOB_QUEUE_HISTORY"
TEST_QUERY_LIMIT_ENV = "TEST_QUERY_LIMIT"
SLICES_MAX_VALUES_ENV = "DIMENSION_SLICES_MAX_VALUES"
LOOKBACK_DAYS_ENV = "DEFAULT_LOOKBACK_DAYS"
LOG_LEVEL_ENV = "DATASOURCE_LOG_LEVEL"
LOG_DIR_ENV = "DATASOURCE_LOG_DIR"

GOOGLE_ANALYTICS_SCOPE = "https://www.googleapis.com/auth/analytics.readonly"


@dataclass(frozen=True)
class OAuthConfig:
    client_id: str
    client_secret: str
    redirect_uri: str
    scope: str = GOOGLE_ANALYTICS_SCOPE


@dataclass(frozen=True)
class QueryConfig:
    test_query_limit: int
    dimension_slices_max_values: int
    default_lookback_days: int


@dataclass(frozen=True)
class JobQueueConfig:
    concurrency: int
    history_limit: int = 200


def get_data_root() -> Path:
    return Path(os.getenv("DATA_ROOT", DEFAULT_DATA_ROOT)).expanduser()


def get_logs_dir(data_root: Path | None = None) -> Path:
    root = data_root if data_root is not None else get_data_root()
    return (root / DEFAULT_LOGS_SUBDIR).expanduser()


def get_secret_key() -> str | None:
    return os.getenv(SECRET_KEY_ENV) or None


def load_oauth_config() -> OAuthConfig:
    return OAuthConfig(
        client_id=os.getenv(GOOGLE_CLIENT_ID_ENV, ""),
        client_secret=os.getenv(GOOGLE_CLIENT_SECRET_ENV, ""),
        redirect_uri=os.getenv(GOOGLE_REDIRECT_URI_ENV, "http://localhost:3000/oauth/google"),
    )


def load_query_config() -> QueryConfig:
    return QueryConfig(
        test_query_limit=int(os.getenv(TEST_QUERY_LIMIT_ENV, 5)),
        dimension_slices_max_values=int(os.getenv(SLICES_MAX_VALUES_ENV, 20)),
        default_lookback_days=int(os.getenv(LOOKBACK_DAYS_ENV, 30)),
    )


def load_job_queue_config() -> JobQueueConfig:
    return JobQueueConfig(
        concurrency=int(os.getenv(JOB_CONCURRENCY_ENV, 2)),
        history_limit=int(os.getenv(JOB_HISTORY_ENV, 200)),
    )
