"""
Processors backed by external services: splitting, categorisation and
outbound HTTP requests.
"""

from __future__ import annotations

from typing import Any

import httpx

from app.core.constants import APIRequestMethod, DefinitionKind, NodeKind
from app.core.logging import get_logger
from app.engine.errors import ExternalServiceError, ProcessorConfigError
from app.engine.graph import Node
from app.engine.processors.base import NodeProcessor
from app.engine.results import Continue, Fanout, RunContext, SubDocument

logger = get_logger(__name__)

SUCCESS_STATUS_RANGE = range(200, 300)


class SplittingProcessor(NodeProcessor):
    """Splits the document into sub-documents; each continues independently."""

    kind = NodeKind.SPLITTING

    async def process(self, node: Node, metadata: dict[str, Any], ctx: RunContext) -> Continue | Fanout:
        instruction_id = (node.config or {}).get("splitting_instruction_id")
        if not instruction_id:
            return self._continue(metadata)

        instruction = await self._definition(ctx, node, DefinitionKind.SPLITTING_INSTRUCTION, instruction_id)
        document = await self._document(ctx, node, metadata)
        parts = await ctx.services.splitting.split(document, instruction.get("instructions"))

        logger.info(
            "Document split",
            node_id=node.id,
            parts=len(parts),
            **ctx.log_context(),
        )
        return Fanout(sub_documents=[
            SubDocument(content=part.get("content"), label=part.get("label"))
            for part in parts
        ])


class CategorisationProcessor(NodeProcessor):
    """Classifies the document; the chosen label is the output port."""

    kind = NodeKind.CATEGORISATION

    async def process(self, node: Node, metadata: dict[str, Any], ctx: RunContext) -> Continue:
        prompt_id = (node.config or {}).get("categorisation_prompt_id")
        if not prompt_id:
            return self._continue(metadata)

        prompt = await self._definition(ctx, node, DefinitionKind.CATEGORISATION_PROMPT, prompt_id)
        labels = prompt.get("labels") or []
        if not labels:
            raise ProcessorConfigError(
                f"Categorisation prompt {prompt_id} has no labels",
                node_id=node.id,
                execution_id=ctx.execution_id,
            )

        document = await self._document(ctx, node, metadata)
        category = await ctx.services.classification.classify(document, labels)
        return self._continue({**metadata, "category": category}, str(category))


class HttpRequestProcessor(NodeProcessor):
    """
    Configurable outbound HTTP call.

    ``url``, ``headers`` values and ``body`` leaves are resolved against the
    document metadata (literal, ``$document.path`` or ``{{ expression }}``).
    Any non-2xx response or transport error fails the step.
    """

    kind = NodeKind.HTTP

    async def process(self, node: Node, metadata: dict[str, Any], ctx: RunContext) -> Continue:
        config = node.config or {}
        formulas = ctx.services.formulas

        method = str(config.get("method") or APIRequestMethod.GET).upper()
        if method not in APIRequestMethod.__members__:
            raise ProcessorConfigError(f"Unsupported HTTP method: {method}", node_id=node.id)

        url = formulas.resolve_value(config.get("url"), metadata)
        if not url:
            raise ProcessorConfigError("HTTP node has no URL", node_id=node.id, execution_id=ctx.execution_id)

        headers = {
            str(key): str(formulas.resolve_value(value, metadata))
            for key, value in (config.get("headers") or {}).items()
        }
        body = self._resolve_body(config.get("body"), metadata, formulas)

        logger.info(
            "Making HTTP request",
            node_id=node.id,
            method=method,
            url=url,
            has_body=body is not None,
            **ctx.log_context(),
        )

        try:
            response = await ctx.services.http.request(method, str(url), headers=headers, body=body)
        except httpx.HTTPError as exc:
            raise ExternalServiceError(
                f"HTTP request failed: {exc}",
                node_id=node.id,
                execution_id=ctx.execution_id,
            ) from exc

        status_code = int(response.get("status") or 0)
        if status_code not in SUCCESS_STATUS_RANGE:
            raise ExternalServiceError(
                f"HTTP request returned {status_code}",
                status_code=status_code,
                response_body=str(response.get("body"))[:2000],
                node_id=node.id,
                execution_id=ctx.execution_id,
            )

        return self._continue({
            **metadata,
            "http_response": {"status": status_code, "body": response.get("body")},
        })

    def _resolve_body(self, body: Any, metadata: dict[str, Any], formulas) -> Any:
        if isinstance(body, dict):
            return {key: self._resolve_body(value, metadata, formulas) for key, value in body.items()}
        if isinstance(body, list):
            return [self._resolve_body(value, metadata, formulas) for value in body]
        return formulas.resolve_value(body, metadata)
