API_GROUP = "datamover.a-cup-of.coffee"
API_VERSION = "v1alpha1"
API_GROUP_VERSION = f"{API_GROUP}/{API_VERSION}"

KIND_DATAMOVER = "DataMover"
KIND_POPULATOR = "DataMoverPopulator"
PLURAL_DATAMOVERS = "datamovers"
PLURAL_POPULATORS = "datamoverpopulators"

# Annotations carrying the population sub-state of a target claim.
ANNOTATION_POPULATING = f"{API_GROUP}/populating"
ANNOTATION_POPULATED = f"{API_GROUP}/populated"
ANNOTATION_CLEANUP_IN_PROGRESS = f"{API_GROUP}/cleanup-in-progress"
ANNOTATION_POPULATED_BY = f"{API_GROUP}/populated-by"
ANNOTATION_POPULATED_AT = f"{API_GROUP}/populated-at"
ANNOTATION_PRIME_PVC = f"{API_GROUP}/prime-pvc"
ANNOTATION_TRUE = "true"

LABEL_DATAMOVER = f"{API_GROUP}/datamover"
LABEL_PRIME_FOR = f"{API_GROUP}/prime-for"
LABEL_POPULATOR = f"{API_GROUP}/populator"
LABEL_PVC = f"{API_GROUP}/pvc"
LABEL_CREATED_BY = "app.kubernetes.io/created-by"
LABEL_COMPONENT = "app.kubernetes.io/component"

DEFAULT_IMAGE_REPOSITORY = "ghcr.io/qjoly/datamover-rclone"
DEFAULT_IMAGE_TAG = "latest"
DEFAULT_PULL_POLICY = "Always"

CLONE_NAME_INFIX = "-cloned-"
PRIME_NAME_SUFFIX = "-prime"
SYNC_JOB_PREFIX = "datamover-sync-"
POPULATION_JOB_PREFIX = "datamover-populator-"

DATA_MOUNT_PATH = "/data/"
CONFIG_MOUNT_PATH = "/config"
JOB_BACKOFF_LIMIT = 2
NOBODY_UID = 65534

ENV_ADD_TIMESTAMP_PREFIX = "ADD_TIMESTAMP_PREFIX"
ENV_SOURCE_PATH = "SOURCE_PATH"
ENV_POPULATION_MODE = "POPULATION_MODE"

# Poll intervals in seconds.
CLONE_BOUND_POLL_SECONDS = 15
SYNC_JOB_POLL_SECONDS = 15
POPULATOR_MISSING_POLL_SECONDS = 10
PRIME_BOUND_POLL_SECONDS = 10
PRIME_TERMINATING_POLL_SECONDS = 5
POPULATION_JOB_POLL_SECONDS = 60
POPULATION_JOB_RETRY_SECONDS = 120
HANDOFF_POLL_SECONDS = 3
REBIND_VERIFY_SECONDS = 5

HANDOFF_UPDATE_ATTEMPTS = 3
HANDOFF_BACKOFF_SECONDS = 0.1

CLAIM_BOUND = "Bound"
CLAIM_PENDING = "Pending"
CLAIM_LOST = "Lost"
