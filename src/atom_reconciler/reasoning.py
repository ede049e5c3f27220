"""Reasoning collaborator boundary used by atom inference and molecule synthesis.

The engine only shapes requests and responses here. Retries and timeouts are
owned by the client implementation (``ChatOpenAI`` ``timeout``/``max_retries``).
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Literal, Protocol

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, Field

from .llm import StructuredOutputAdapter, get_structured_chat_model

logger = logging.getLogger(__name__)

TaskType = Literal["infer_atoms", "synthesize_molecules"]


class AtomCandidate(BaseModel):
    source_test_key: str = Field(description="The `file:test` key of the context item this atom was inferred from")
    description: str
    category: str = "functional"
    observable_outcomes: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.0, description="0-100")
    ambiguity_reasons: list[str] = Field(default_factory=list)
    reasoning: str = ""
    quality_score: float | None = None
    temp_id: str | None = None


class MoleculeCandidate(BaseModel):
    name: str
    description: str = ""
    lens_type: str = "feature"
    atom_ids: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.0, description="0-100")
    reasoning: str = ""
    parent_id: str | None = None
    temp_id: str | None = None


class AtomInferenceReply(BaseModel):
    atoms: list[AtomCandidate] = Field(default_factory=list)


class MoleculeSynthesisReply(BaseModel):
    molecules: list[MoleculeCandidate] = Field(default_factory=list)


class ReasoningRequest(BaseModel):
    task_type: TaskType
    context_batch: list[dict[str, Any]]


class ReasoningResponse(BaseModel):
    atoms: list[AtomCandidate] = Field(default_factory=list)
    molecules: list[MoleculeCandidate] = Field(default_factory=list)
    tokens: int = 0
    cost: float = 0.0


class ReasoningClient(Protocol):
    def reason(self, request: ReasoningRequest) -> ReasoningResponse: ...


_ATOM_SYSTEM_PROMPT = (
    "You infer intent atoms from tests. An intent atom is an atomic, testable, behavioral requirement "
    "written in implementation-agnostic language. For each test in the batch produce exactly one atom "
    "whose source_test_key echoes the test key. Describe observable outcomes, rate confidence from 0 to 100 "
    "and list ambiguity reasons when the test intent is unclear."
)
_MOLECULE_SYSTEM_PROMPT = (
    "You group intent atoms into molecules: named, user-meaningful capabilities. Each molecule references "
    "atom ids from the batch, declares a lens_type (feature, capability, user_story, journey) and a "
    "confidence from 0 to 100. Only group atoms that clearly belong together."
)


class LangChainReasoningClient:
    """Reasoning client backed by an OpenAI chat model with schema-bound output."""

    def __init__(
        self,
        *,
        model_name: str,
        timeout: int,
        chat_model: ChatOpenAI | None = None,
        repo_root: Path | None = None,
    ) -> None:
        self._atoms: StructuredOutputAdapter[AtomInferenceReply] = get_structured_chat_model(
            model_name=model_name, schema=AtomInferenceReply, timeout=timeout, chat_model=chat_model, repo_root=repo_root
        )
        self._molecules: StructuredOutputAdapter[MoleculeSynthesisReply] = get_structured_chat_model(
            model_name=model_name,
            schema=MoleculeSynthesisReply,
            timeout=timeout,
            chat_model=chat_model,
            repo_root=repo_root,
        )

    def reason(self, request: ReasoningRequest) -> ReasoningResponse:
        batch = json.dumps(request.context_batch, indent=2, default=str)
        if request.task_type == "infer_atoms":
            reply = self._atoms.invoke([SystemMessage(content=_ATOM_SYSTEM_PROMPT), HumanMessage(content=batch)])
            return ReasoningResponse(atoms=reply.parsed.atoms, tokens=reply.total_tokens)
        reply = self._molecules.invoke([SystemMessage(content=_MOLECULE_SYSTEM_PROMPT), HumanMessage(content=batch)])
        return ReasoningResponse(molecules=reply.parsed.molecules, tokens=reply.total_tokens)
