"""
AWS-backed collaborators: backend metadata, stack events and CloudWatch log tails.
"""

from .metadata import CloudFormationMetadataSource
from .log_tail import CloudWatchLogTailSource
from .stack_events import CloudFormationEventSource

__all__ = ["CloudFormationMetadataSource", "CloudWatchLogTailSource", "CloudFormationEventSource"]
