"""
Constants for redis-clusterctl

Centralized definition of magic numbers and strings used throughout the project.
"""

# Operation polling
DEFAULT_POLL_INTERVAL_S = 1.0
DEFAULT_POLL_JITTER_S = 0.25
DEFAULT_POLL_MAX_RETRIES = 5
DEFAULT_POLL_BACKOFF_S = 0.5
DEFAULT_POLL_BACKOFF_MAX_S = 8.0

# Per-operation budget; creating a Redis cluster routinely takes several minutes
DEFAULT_STEP_TIMEOUT_S = 30 * 60

# Clusters converged concurrently by Engine.apply_many
DEFAULT_MAX_PARALLEL_CLUSTERS = 4

# Environment variable prefix for EngineSettings.from_env
ENV_PREFIX = "REDIS_CLUSTERCTL_"

# Environment tiers
ENVIRONMENT_PRODUCTION = "PRODUCTION"
ENVIRONMENT_PRESTABLE = "PRESTABLE"

# Maintenance window types and days
MAINTENANCE_ANYTIME = "ANYTIME"
MAINTENANCE_WEEKLY = "WEEKLY"
WEEKDAYS = ("MON", "TUE", "WED", "THU", "FRI", "SAT", "SUN")

# Shard key used for sentinel (unsharded) topologies
UNSHARDED = ""

# The remote API reports disk sizes in bytes, specs use GiB
BYTES_PER_GIB = 2**30

# Remote field paths used in update masks
MASK_DESCRIPTION = "description"
MASK_LABELS = "labels"
MASK_SECURITY_GROUPS = "securityGroupIds"
MASK_ENVIRONMENT = "environment"
MASK_DELETION_PROTECTION = "deletionProtection"
MASK_MAINTENANCE_WINDOW = "maintenanceWindow"
MASK_RESOURCE_PRESET = "config.resources.resourcePresetId"
MASK_DISK_SIZE = "config.resources.diskSize"
MASK_VERSION = "config.version"
MASK_REDIS_PREFIX = "config.redis."

# Audit table
TABLE_STEP_AUDIT = "redis_cluster_step_audit"

# Cluster statuses meaning the control plane is already running an operation
BUSY_STATUSES = ("CREATING", "UPDATING", "STARTING", "STOPPING")

# Remote error codes meaning the addressed resource does not exist
NOT_FOUND_CODES = (5, "NOT_FOUND")
