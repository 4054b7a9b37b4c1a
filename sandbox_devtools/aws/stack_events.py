"""
Deployment progress from CloudFormation stack events.
"""

import logging
from datetime import datetime
from typing import List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..models import StackEvent

logger = logging.getLogger(__name__)


class CloudFormationEventSource:
    """Reads the stack events of a sandbox backend."""

    def __init__(self, region: Optional[str] = None, client=None):
        self.region = region
        self.cloudformation_client = client

    def _get_cloudformation_client(self):
        """Lazy initialization of CloudFormation client."""
        if self.cloudformation_client is None:
            self.cloudformation_client = boto3.client("cloudformation", region_name=self.region)
        return self.cloudformation_client

    def get_stack_events(self, backend_identifier: str, since: Optional[datetime] = None) -> List[StackEvent]:
        """
        Fetch stack events of a backend, oldest first.

        Args:
            backend_identifier: Stack name of the backend
            since: Only return events strictly newer than this time

        Returns:
            List of events; empty when the stack cannot be read
        """
        client = self._get_cloudformation_client()
        events: List[StackEvent] = []
        try:
            paginator = client.get_paginator("describe_stack_events")
            for page in paginator.paginate(StackName=backend_identifier):
                seen_older = False
                for raw in page.get("StackEvents", []):
                    if since is not None and raw["Timestamp"] <= since:
                        seen_older = True
                        continue
                    events.append(_to_stack_event(raw))
                # Pages run newest to oldest
                if seen_older:
                    break
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error fetching stack events for {backend_identifier}: {e}")
            return []

        events.sort(key=lambda event: event.timestamp)
        logger.debug(f"Fetched {len(events)} stack events for {backend_identifier}")
        return events


def _to_stack_event(raw) -> StackEvent:
    return StackEvent(
        event_id=raw.get("EventId", ""),
        timestamp=raw["Timestamp"],
        logical_id=raw.get("LogicalResourceId", ""),
        physical_id=raw.get("PhysicalResourceId", ""),
        resource_type=raw.get("ResourceType", ""),
        status=raw.get("ResourceStatus", ""),
        stack_id=raw.get("StackId", ""),
        stack_name=raw.get("StackName", ""),
        status_reason=raw.get("ResourceStatusReason"),
    )
