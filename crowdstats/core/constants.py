"""
Centralized constants for the crowdstats engine.

Every value reads from an environment variable with the current hardcoded
value as default, so existing deployments require zero configuration changes.
"""
import os
from datetime import datetime, timezone

# --- API Version ---
API_VERSION = os.getenv("CROWDSTATS_API_VERSION", "1.0.0")

# --- Remote Source ---
REMOTE_API_URL = os.getenv("CROWDSTATS_REMOTE_API_URL", "https://login.salesforce.com")
REMOTE_API_VERSION = os.getenv("CROWDSTATS_REMOTE_API_VERSION", "v59.0")
REMOTE_ACCESS_TOKEN = os.getenv("CROWDSTATS_REMOTE_ACCESS_TOKEN", "")
REMOTE_TIMEOUT = float(os.getenv("CROWDSTATS_REMOTE_TIMEOUT", "30.0"))
REMOTE_CONNECT_RETRIES = int(os.getenv("CROWDSTATS_REMOTE_CONNECT_RETRIES", "3"))

# --- Fetch Budgets ---
REQUEST_DEADLINE_SECONDS = float(os.getenv("CROWDSTATS_REQUEST_DEADLINE", "240.0"))
MAX_PAGES = int(os.getenv("CROWDSTATS_MAX_PAGES", "500"))
PROGRESS_LOG_EVERY = int(os.getenv("CROWDSTATS_PROGRESS_LOG_EVERY", "50"))

# --- Logging ---
LOG_LEVEL = os.getenv("CROWDSTATS_LOG_LEVEL", "INFO")

# --- Two-Tier Join ---
LOOKUP_BATCH_SIZE = int(os.getenv("CROWDSTATS_LOOKUP_BATCH_SIZE", "200"))
LOOKUP_PARALLELISM = int(os.getenv("CROWDSTATS_LOOKUP_PARALLELISM", "10"))

# --- Cache TTLs (seconds) ---
CACHE_DEFAULT_TTL = float(os.getenv("CROWDSTATS_CACHE_DEFAULT_TTL", "300.0"))
REPORT_CACHE_TTL = float(os.getenv("CROWDSTATS_REPORT_CACHE_TTL", "600.0"))
STALE_FRACTION = float(os.getenv("CROWDSTATS_STALE_FRACTION", "0.8"))

# --- Snapshots ---
SNAPSHOT_PATH = os.getenv("CROWDSTATS_SNAPSHOT_PATH", "data/snapshots.json")
SNAPSHOT_RETENTION = int(os.getenv("CROWDSTATS_SNAPSHOT_RETENTION", "365"))
DEFAULT_TREND_DAYS = int(os.getenv("CROWDSTATS_TREND_DAYS", "30"))

# --- Entities ---
ASSIGNMENT_ENTITY = os.getenv("CROWDSTATS_ASSIGNMENT_ENTITY", "Contributor_Project__c")
PERSON_ENTITY = os.getenv("CROWDSTATS_PERSON_ENTITY", "Contact")
PROJECT_ENTITY = os.getenv("CROWDSTATS_PROJECT_ENTITY", "Project__c")
ASSIGNMENT_STATUS_FIELD = os.getenv("CROWDSTATS_ASSIGNMENT_STATUS_FIELD", "Status__c")
ACTIVE_STATUS = os.getenv("CROWDSTATS_ACTIVE_STATUS", "Active")
PRODUCTIVE_STATUS = os.getenv("CROWDSTATS_PRODUCTIVE_STATUS", "Production")

# --- CORS ---
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")


def utc_now() -> str:
    """Return current UTC time as ISO-8601 string. Single format everywhere."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
