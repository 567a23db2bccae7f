# The name of the project
PROJECT_NAME = "kubeplane"

# The environment variable for the directory where the kubeplane data is saved
HOME_ENV_VAR = "KUBEPLANE_HOME"

# The environment variable pointing at the control plane configuration file
CONFIG_ENV_VAR = "KUBEPLANE_CONFIG"

# Pulumi stack name
PULUMI_STACK_NAME = "default"

# Namespace that holds the control plane's own workloads on managed clusters
SYSTEM_NAMESPACE = "pipeline-system"

# Service account the Helm support hook binds to cluster-admin
HELM_SERVICE_ACCOUNT = "kubeplane-helm"

# How long the TTL controller waits before re-evaluating a live cluster
TTL_RECHECK_MINUTES = 5

# Bounded retry of the Helm support post hook
HELM_RETRY_ATTEMPTS = 30
HELM_RETRY_SLEEP_SECONDS = 15

# Attempts made when deleting workloads before tearing down a cluster
DELETE_RESOURCES_ATTEMPTS = 3

# Checklist step recorded once cloud infrastructure exists
INFRASTRUCTURE_STEP = "infrastructure"

# The environment variable holding the organization CLI commands act on
ORGANIZATION_ENV_VAR = "KUBEPLANE_ORGANIZATION"
