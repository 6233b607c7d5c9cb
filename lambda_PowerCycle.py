import json
import logging
import os
from botocore.exceptions import ClientError

from ec2_deployment import (
    CountMismatchError,
    NonConformingStateError,
    get_ec2_client,
    get_instance_ids,
    start_instances,
    stop_instances,
)

# --- GLOBAL STATIC CONFIGURATION VARIABLES ---
DEFAULT_DEPLOYMENT = os.environ.get("DEPLOYMENT_TAG", "")              # Used when the event has no 'deployment'
ACCEPT_TRANSITIONAL = os.environ.get("ACCEPT_TRANSITIONAL") or None    # "true"/"false", unset or blank keeps per-operation defaults
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").strip().upper()
# --- END GLOBAL STATIC CONFIGURATION VARIABLES ---

# Initialize logger for better logging to CloudWatch
logger = logging.getLogger()
if isinstance(logging.getLevelName(LOG_LEVEL), int):
    logger.setLevel(LOG_LEVEL)
else:
    logger.setLevel(logging.INFO)
    logger.warning(f"Unknown LOG_LEVEL '{LOG_LEVEL}', falling back to INFO.")

# State the deployment's instances must currently be in for each operation
SOURCE_STATE = {
    'start': 'stopped',
    'stop': 'running',
}


def lambda_handler(event, context):
    logger.info(f"Received event: {json.dumps(event, default=str)}")

    # Fields not yet validated stay None in error responses
    result = {
        "operation": None,
        "deployment": None,
        "region": None,
        "successful_instances": [],
        "failed_instances": [],
    }

    # --- Input Validation for Region ---
    if 'region' not in event or not isinstance(event['region'], str) or not event['region'].strip():
        logger.error("Validation Error: Missing or invalid 'region' in event.")
        return _response(400, dict(result, message="Missing or invalid 'region' in event."))
    region = result["region"] = event['region'].strip()

    # --- Input Validation for Operation ---
    operation = event.get('operation')
    if operation not in SOURCE_STATE:
        logger.error("Validation Error: Missing or invalid 'operation' in event. Must be 'start' or 'stop'.")
        return _response(400, dict(result, message="Missing or invalid 'operation' in event. Must be 'start' or 'stop'."))
    result["operation"] = operation

    # --- Input Validation for Deployment ---
    deployment = event.get('deployment', DEFAULT_DEPLOYMENT)
    if not isinstance(deployment, str) or not deployment.strip():
        logger.error("Validation Error: Missing or invalid 'deployment' in event and no DEPLOYMENT_TAG configured.")
        return _response(400, dict(result, message="Missing or invalid 'deployment' in event."))
    deployment = result["deployment"] = deployment.strip()

    try:
        accept_transitional = _accept_transitional(event)
    except ValueError as e:
        logger.error(f"Validation Error: {e}")
        return _response(400, dict(result, message=str(e)))
    # --- End Input Validation ---

    try:
        ec2 = get_ec2_client(region)
    except Exception as e:
        logger.error(f"Failed to initialize EC2 client for region {region}: {e}", exc_info=True)
        return _response(500, dict(result, message=f"Failed to initialize EC2 client for region {region}."))

    try:
        instance_ids = get_instance_ids(ec2, deployment, SOURCE_STATE[operation])
        if not instance_ids:
            logger.warning(f"No '{SOURCE_STATE[operation]}' instances found for deployment '{deployment}' in region '{region}'.")
            # Nothing to act on is still a successful invocation.
            return _response(200, dict(
                result,
                message=f"No instances found in suitable state for '{operation}' operation on deployment '{deployment}'."
            ))

        logger.info(f"Attempting to {operation} the following instances: {instance_ids} in region: {region}")
        kwargs = {}
        if accept_transitional is not None:
            kwargs['accept_transitional'] = accept_transitional
        if operation == 'start':
            start_instances(ec2, instance_ids, **kwargs)
        else:
            stop_instances(ec2, instance_ids, **kwargs)

    except NonConformingStateError as e:
        logger.error(f"Instances did not {operation}: {e.instance_ids}")
        result["successful_instances"] = [i for i in instance_ids if i not in e.instance_ids]
        result["failed_instances"] = [
            {"instance_id": i, "reason": f"Instance did not reach the expected state after '{operation}'"}
            for i in e.instance_ids
        ]
        return _response(500, dict(result, message=str(e)))
    except CountMismatchError as e:
        logger.error(f"Unexpected {operation} response: {e}")
        return _response(500, dict(result, message=str(e)))
    except ClientError as e:
        error_code = e.response.get("Error", {}).get("Code")
        error_message = e.response.get("Error", {}).get("Message")
        logger.error(f"AWS API Error during '{operation}' of deployment {deployment}: [{error_code}] {error_message}", exc_info=True)
        return _response(500, dict(result, message=f"AWS API Error: [{error_code}] {error_message}"))
    except Exception as e:
        logger.critical(f"Unexpected error during '{operation}' of deployment {deployment}: {e}", exc_info=True)
        return _response(500, dict(result, message=f"Unexpected error: {str(e)}"))

    result["successful_instances"] = instance_ids
    overall_message = f"Successfully initiated {operation} for all instances of deployment '{deployment}'."
    logger.info(f"Function execution completed. Message: {overall_message}")
    return _response(200, dict(result, message=overall_message))


### Helper Functions ###

def _accept_transitional(event):
    # Event flag wins over the ACCEPT_TRANSITIONAL environment default. None means "operation default".
    value = event.get('accept_transitional', ACCEPT_TRANSITIONAL)
    if isinstance(value, str) and not value.strip():
        return None
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ('true', 'false'):
        return value.strip().lower() == 'true'
    raise ValueError("Invalid 'accept_transitional'. Must be a boolean or 'true'/'false'.")


def _response(status_code, body):
    return {
        "statusCode": status_code,
        "body": json.dumps(body, default=str)  # Body must be a JSON string
    }
