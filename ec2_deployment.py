import logging
import boto3

logger = logging.getLogger(__name__)

# --- EC2 INSTANCE STATE CODES (low byte of State.Code) ---
INSTANCE_STATE_PENDING = 0
INSTANCE_STATE_RUNNING = 16
INSTANCE_STATE_SHUTTING_DOWN = 32
INSTANCE_STATE_TERMINATED = 48
INSTANCE_STATE_STOPPING = 64
INSTANCE_STATE_STOPPED = 80

INSTANCE_STATE_NAMES = {
    'pending': INSTANCE_STATE_PENDING,
    'running': INSTANCE_STATE_RUNNING,
    'shutting-down': INSTANCE_STATE_SHUTTING_DOWN,
    'terminated': INSTANCE_STATE_TERMINATED,
    'stopping': INSTANCE_STATE_STOPPING,
    'stopped': INSTANCE_STATE_STOPPED,
}

DEPLOYMENT_TAG_KEY = "Deployment"
# --- END EC2 INSTANCE STATE CODES ---


class InstanceOperationError(Exception):
    """Base class for a start/stop request that EC2 accepted but did not honour."""

    def __init__(self, operation, message):
        super().__init__(message)
        self.operation = operation


class CountMismatchError(InstanceOperationError):

    def __init__(self, operation, requested, returned):
        super().__init__(
            operation,
            f"the number of instances returned by '{operation}' did not match the request "
            f"(requested {requested}, got {returned})"
        )
        self.requested = requested
        self.returned = returned


class NonConformingStateError(InstanceOperationError):

    def __init__(self, operation, instance_ids):
        super().__init__(
            operation,
            f"The following instances did not {operation}: {' '.join(instance_ids)}"
        )
        self.instance_ids = list(instance_ids)


def get_ec2_client(region_name=None):
    # Region and credentials come from the default boto3 chain unless a region is given.
    if region_name:
        return boto3.client('ec2', region_name=region_name)
    return boto3.client('ec2')


def get_instance_ids(ec2_client, deployment_tag, current_state):
    """Return the ids of instances tagged Deployment=<deployment_tag> in <current_state>.

    Only the first page of DescribeInstances is read. API errors are raised
    to the caller unchanged.
    """
    if current_state not in INSTANCE_STATE_NAMES:
        raise ValueError(
            f"Invalid instance state '{current_state}'. Must be one of: {', '.join(INSTANCE_STATE_NAMES)}"
        )

    filters = [
        {'Name': f"tag:{DEPLOYMENT_TAG_KEY}", 'Values': [deployment_tag]},
        {'Name': 'instance-state-name', 'Values': [current_state]},
    ]
    logger.debug(f"Describing instances with filters: {filters}")
    response = ec2_client.describe_instances(Filters=filters)

    instance_ids = []
    for reservation in response.get('Reservations', []):
        for instance in reservation.get('Instances', []):
            instance_ids.append(instance['InstanceId'])

    logger.info(f"Found {len(instance_ids)} '{current_state}' instance(s) for deployment '{deployment_tag}': {instance_ids}")
    return instance_ids


def start_instances(ec2_client, instance_ids, accept_transitional=False):
    # Strict by default: only 'running' counts, 'pending' is allowed when accept_transitional is set.
    accepted_codes = {INSTANCE_STATE_RUNNING}
    if accept_transitional:
        accepted_codes.add(INSTANCE_STATE_PENDING)

    instance_ids = list(instance_ids)
    _check_instance_ids(instance_ids)
    logger.info(f"Requesting start for instances: {instance_ids}")
    response = ec2_client.start_instances(InstanceIds=instance_ids)
    _verify_state_changes('start', instance_ids, response.get('StartingInstances', []), accepted_codes)


def stop_instances(ec2_client, instance_ids, accept_transitional=True):
    accepted_codes = {INSTANCE_STATE_STOPPED}
    if accept_transitional:
        accepted_codes.add(INSTANCE_STATE_STOPPING)

    instance_ids = list(instance_ids)
    _check_instance_ids(instance_ids)
    logger.info(f"Requesting stop for instances: {instance_ids}")
    response = ec2_client.stop_instances(InstanceIds=instance_ids)
    _verify_state_changes('stop', instance_ids, response.get('StoppingInstances', []), accepted_codes)


### Helper Functions ###

def _check_instance_ids(instance_ids):
    if not instance_ids:
        raise ValueError("At least one instance ID is required.")


def _verify_state_changes(operation, instance_ids, state_changes, accepted_codes):
    # The number of instances we got back should be the same as how many we requested.
    if len(state_changes) != len(instance_ids):
        raise CountMismatchError(operation, len(instance_ids), len(state_changes))

    not_conforming = []
    for change in state_changes:
        # The high byte is reserved for internal AWS use.
        code = change['CurrentState']['Code'] & 0xFF
        logger.debug(f"Instance {change['InstanceId']} reported state code {code} after '{operation}'")
        if code not in accepted_codes:
            not_conforming.append(change['InstanceId'])

    if not_conforming:
        raise NonConformingStateError(operation, not_conforming)

    logger.info(f"All {len(state_changes)} instance(s) accepted '{operation}'")
