# /flowbot/workflows/publisher.py

import logging
from typing import List

from flowbot.models.flow import FlowVersion
from flowbot.services.repositories import FlowRepository
from flowbot.workflows.cache import VersionCache
from flowbot.workflows.exceptions import AuthoringError, FlowNotFound
from flowbot.workflows.validator import ValidationProblem, has_errors, validate_flow

logger = logging.getLogger(__name__)


class FlowPublisher:
    """Validates authored flows and turns them into the project's active version."""

    def __init__(self, flows: FlowRepository, cache: VersionCache):
        self.flows = flows
        self.cache = cache

    async def validate(self, flow_id: str) -> List[ValidationProblem]:
        flow = await self.flows.get_flow(flow_id)
        if flow is None:
            raise FlowNotFound(f"Flow '{flow_id}' not found")
        return validate_flow(flow)

    async def publish(self, flow_id: str) -> FlowVersion:
        """
        Snapshots the flow as a new version and makes it the only active one.
        Raises AuthoringError (with the problems attached) when validation
        reports any error; warnings do not block publishing.
        """
        flow = await self.flows.get_flow(flow_id)
        if flow is None:
            raise FlowNotFound(f"Flow '{flow_id}' not found")

        problems = validate_flow(flow)
        if has_errors(problems):
            errors = [p for p in problems if p["severity"] == "error"]
            logger.warning(f"Publish of flow {flow_id} rejected with {len(errors)} error(s)")
            raise AuthoringError(f"Flow '{flow.name}' has {len(errors)} validation error(s)", problems)

        number = await self.flows.next_version_number(flow_id)
        version = await self.flows.activate_version(FlowVersion.snapshot(flow, number))
        self.cache.invalidate(flow.project_id)
        logger.info(f"Published flow {flow_id} as version {version.version} for project {flow.project_id}")
        return version
