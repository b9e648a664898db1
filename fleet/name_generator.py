import re
import random

# Lowercase alphanumerics only, so ids are valid in pod names and label values.
ID_CHARS = 'abcdefghijklmnopqrstuvwxyz0123456789'

INSTANCE_ID_LENGTH = 8
REPLICA_ID_LENGTH = 6
MAX_POD_NAME_LENGTH = 63


def generate_unique_id(size: int) -> str:
    return ''.join(random.choice(ID_CHARS) for _ in range(size))


def generate_instance_id() -> str:
    """Generate an instance id like 'k3v9x0qa'."""
    return generate_unique_id(INSTANCE_ID_LENGTH)


def generate_replica_id() -> str:
    """Generate an orchestrator replica id like 'fleet-7hq2lm'."""
    return f"fleet-{generate_unique_id(REPLICA_ID_LENGTH)}"


def pod_name_for(template_id: str, instance_id: str) -> str:
    """Pod name '<template>-<instance>', reduced to a valid DNS-1123 label."""
    prefix = re.sub(r'[^a-z0-9-]+', '-', template_id.lower()).strip('-') or 'server'
    prefix = prefix[:MAX_POD_NAME_LENGTH - len(instance_id) - 1].rstrip('-')
    return f"{prefix}-{instance_id}"

