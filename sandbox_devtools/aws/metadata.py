"""
Backend metadata from CloudFormation.
"""

import json
import logging
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import ClientError

from ..exceptions import BackendMetadataError
from ..models import SandboxStatus

logger = logging.getLogger(__name__)

CDK_PATH_METADATA_KEY = "aws:cdk:path"


class CloudFormationMetadataSource:
    """Describes a sandbox backend's resources from its CloudFormation stack."""

    def __init__(self, region: Optional[str] = None, client=None):
        self.region = region
        self.cloudformation_client = client

    def _get_cloudformation_client(self):
        """Lazy initialization of CloudFormation client."""
        if self.cloudformation_client is None:
            self.cloudformation_client = boto3.client("cloudformation", region_name=self.region)
        return self.cloudformation_client

    def get_backend_metadata(self, backend_identifier: str) -> Dict[str, Any]:
        """
        Describe the resources of a backend stack.

        Args:
            backend_identifier: Stack name of the backend

        Returns:
            Dict with "name", "region" and "resources"

        Raises:
            BackendMetadataError: If the stack is mid-deployment
            ClientError: If CloudFormation rejects the request, e.g. the stack does not exist
        """
        client = self._get_cloudformation_client()

        stacks = client.describe_stacks(StackName=backend_identifier).get("Stacks", [])
        if not stacks:
            raise BackendMetadataError(f"Stack {backend_identifier} does not exist")

        stack_status = stacks[0].get("StackStatus", "")
        if stack_status.endswith("_IN_PROGRESS"):
            raise BackendMetadataError(
                f"Cannot describe {backend_identifier}: deployment is in progress ({stack_status})"
            )

        construct_paths = self._get_construct_paths(backend_identifier)
        resources: List[Dict[str, Any]] = []
        paginator = client.get_paginator("list_stack_resources")
        for page in paginator.paginate(StackName=backend_identifier):
            for summary in page.get("StackResourceSummaries", []):
                logical_id = summary.get("LogicalResourceId", "")
                resource = {
                    "logicalResourceId": logical_id,
                    "physicalResourceId": summary.get("PhysicalResourceId", ""),
                    "resourceType": summary.get("ResourceType", ""),
                    "resourceStatus": summary.get("ResourceStatus", ""),
                }
                if logical_id in construct_paths:
                    resource["metadata"] = {"constructPath": construct_paths[logical_id]}
                resources.append(resource)

        logger.debug(f"Described {len(resources)} resources in {backend_identifier}")
        return {
            "name": backend_identifier,
            "region": client.meta.region_name,
            "resources": resources,
        }

    def get_sandbox_status(self, backend_identifier: str) -> SandboxStatus:
        """
        Derive the sandbox status from the backend stack status.

        Raises:
            ClientError: If CloudFormation rejects the request for another reason than a missing stack
        """
        try:
            stacks = self._get_cloudformation_client().describe_stacks(StackName=backend_identifier).get("Stacks", [])
        except ClientError as e:
            if "does not exist" in str(e):
                return SandboxStatus.NONEXISTENT
            raise

        if not stacks:
            return SandboxStatus.NONEXISTENT
        stack_status = stacks[0].get("StackStatus", "")
        if stack_status == "DELETE_COMPLETE":
            return SandboxStatus.NONEXISTENT
        if stack_status.endswith("_IN_PROGRESS"):
            return SandboxStatus.DEPLOYING
        return SandboxStatus.RUNNING

    def _get_construct_paths(self, stack_name: str) -> Dict[str, str]:
        """Map logical ids to CDK construct paths from the stack template."""
        client = self._get_cloudformation_client()
        try:
            body = client.get_template(StackName=stack_name, TemplateStage="Original").get("TemplateBody")
        except ClientError as e:
            logger.warning(f"Could not read template for {stack_name}: {e}")
            return {}

        if isinstance(body, str):
            try:
                body = json.loads(body)
            except json.JSONDecodeError:
                # YAML templates carry no CDK metadata
                return {}
        if not isinstance(body, dict):
            return {}

        paths = {}
        for logical_id, resource in body.get("Resources", {}).items():
            path = (resource.get("Metadata") or {}).get(CDK_PATH_METADATA_KEY)
            if path:
                paths[logical_id] = path
        return paths
