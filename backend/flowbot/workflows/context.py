# /flowbot/workflows/context.py

from collections import ChainMap
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from flowbot.models.execution import Execution, InboundEvent
from flowbot.services.query_executor import QueryExecutor
from flowbot.services.user_variables import UserVariablesService
from flowbot.services.webhooks import WebhookClient
from flowbot.utils.clock import utcnow
from flowbot.workflows import templates
from flowbot.workflows.exceptions import ActionFailure, QueryError
from flowbot.workflows.graph import FlowGraph


class ExecutionContext:
    """Everything a handler may touch while running one node of one execution."""

    def __init__(
        self,
        execution: Execution,
        graph: FlowGraph,
        event: InboundEvent,
        queries: QueryExecutor,
        user_variables: UserVariablesService,
        project_variables: Dict[str, Any],
        log: Any,
        clock: Callable[[], datetime] = utcnow,
        webhooks: Optional[WebhookClient] = None,
    ):
        self.execution = execution
        self.graph = graph
        self.event = event
        self.queries = queries
        self.user_variables = user_variables
        self.project_variables = project_variables
        self.log = log
        self.clock = clock
        self.webhooks = webhooks

    @property
    def chat_id(self) -> str:
        return self.execution.chat_id

    @property
    def project_id(self) -> str:
        return self.execution.project_id

    @property
    def local(self) -> Dict[str, Any]:
        return self.execution.variables

    def set_local(self, key: str, value: Any) -> None:
        self.execution.variables[key] = value

    def clear_local(self, key: str) -> None:
        self.execution.variables.pop(key, None)

    def now(self) -> datetime:
        return self.clock()

    async def scope(self) -> ChainMap:
        """Local, then user, then project variables. User variables are recomputed on every call."""
        user = await self.user_variables.compute(self.project_id, self.chat_id, self.execution.user_id)
        project = {f"project.{key}": value for key, value in self.project_variables.items()}
        return templates.build_scope(self.execution.variables, user, project)

    async def render(self, text: Optional[str]) -> str:
        if not text or "{" not in text:
            return text or ""
        return templates.render(text, await self.scope())

    async def resolve(self, value: Any) -> Any:
        return templates.resolve(value, await self.scope())

    async def run_query(self, name: str, params: Dict[str, Any], node_id: Optional[str] = None) -> Any:
        try:
            return await self.queries.execute(name, params)
        except QueryError as e:
            raise ActionFailure(e.message, node_id=node_id, query=name) from e

    async def send_message(self, text: str, buttons: Optional[List[List[dict]]] = None,
                           node_id: Optional[str] = None) -> Optional[str]:
        params = {"chat_id": self.chat_id, "text": text}
        if buttons:
            params["buttons"] = buttons
        result = await self.run_query("send_message", params, node_id=node_id)
        return result["message_id"]
