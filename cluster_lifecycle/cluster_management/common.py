APP_TYPE = "clusterlifecycle"
APP_NAME = "cluster-lifecycle"

CLUSTER_SPECIFICATION_FILE = "cluster.json"
ORIG_CONF_DIR_NAME = "confdir"
GENERATED_CONF_DIR_NAME = "generated"
DATA_DIR_NAME = "database"

ROLE_MASTER = "master"
ROLE_WORKER = "worker"

# Role option keys
ROLE_INSTANCES = "role.instances"
ROLE_NAME = "role.name"
YARN_MEMORY = "yarn.memory"
YARN_CORES = "yarn.vcores"
JVM_HEAP = "jvm.heapsize"
APP_INFOPORT = "app.infoport"
ENV_PREFIX = "env."

DEF_YARN_CORES = 1
DEF_HEAP_SIZE = 256
MIN_HEAP_SIZE = 0

# Cluster option keys
OPTION_TEST = "cluster.test"
OPTION_AM_MEMORY = "coordinator.memory"
OPTION_AM_CORES = "coordinator.vcores"

# Memory (MB) and cores requested for the deployed coordinator
DEFAULT_AM_MEMORY = 10
DEFAULT_AM_CORES = 1

E_CLUSTER_RUNNING = "cluster already running"
E_ALREADY_EXISTS = "already exists"
E_MISSING_PATH = "Missing path "
E_INCOMPLETE_CLUSTER_SPEC = "Cluster specification is marked as incomplete: "
E_UNKNOWN_CLUSTER = "Unknown cluster "
E_DESTROY_CREATE_RACE_CONDITION = "created while it was being destroyed"
E_DESTROY_CREATE_RACE = "destroy/create race"
