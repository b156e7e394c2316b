from typing import List, Optional, Sequence
import re
import time

import structlog
from langchain_core.embeddings import Embeddings
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import SystemMessage, HumanMessage
from langchain_core.output_parsers import StrOutputParser

from flowmind.domain.models.thought import Thought
from flowmind.domain.streaming.streaming_handler import StreamingHandler
from flowmind.infrastructure.config.settings import LLMSettings
from flowmind.infrastructure.observability.logging import metrics, elapsed_ms

logger = structlog.get_logger(__name__)

NOT_CONFIGURED_MESSAGE = "AI suggestions are unavailable: no language model is configured."
ERROR_MESSAGE = "AI suggestions could not be generated right now."
PLACEHOLDERS = {NOT_CONFIGURED_MESSAGE, ERROR_MESSAGE}

MAX_SUGGESTION_LENGTH = 150
MAX_CONTEXT_THOUGHTS = 5

SYSTEM_PROMPT = (
    "You help a person evolve a graph of short notes, tasks, goals and questions. "
    "Reply with a few short, concrete suggestions, one per line, no preamble."
)

_BULLET = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s*")


def is_placeholder(suggestions: Sequence[str]) -> bool:
    """True when a suggestion list is only the unavailable/error placeholder"""
    return len(suggestions) == 1 and suggestions[0] in PLACEHOLDERS


def parse_suggestions(text: str) -> List[str]:
    """Split a model reply into clean one-line suggestions"""

    suggestions = []
    for line in text.splitlines():
        cleaned = _BULLET.sub("", line).strip()
        if cleaned and len(cleaned) < MAX_SUGGESTION_LENGTH:
            suggestions.append(cleaned)
    return suggestions


def _content_text(thought: Thought) -> str:
    return thought.text_content or str(thought.content)


class InsightModel:
    """Suggestions and embeddings from optional langchain models"""

    def __init__(
        self,
        llm: Optional[BaseChatModel] = None,
        embeddings: Optional[Embeddings] = None,
        streaming: Optional[StreamingHandler] = None
    ):
        self.llm = llm
        self.embeddings = embeddings
        self.streaming = streaming or StreamingHandler()

    @classmethod
    def from_settings(cls, settings: LLMSettings, streaming: Optional[StreamingHandler] = None) -> "InsightModel":
        """Build provider clients; a client that cannot be built stays absent"""

        llm = None
        embeddings = None

        if settings.provider == "ollama":
            try:
                from langchain_ollama import ChatOllama, OllamaEmbeddings

                llm = ChatOllama(base_url=settings.endpoint, model=settings.model, temperature=0.7)
                if settings.embedding_model:
                    embeddings = OllamaEmbeddings(base_url=settings.endpoint, model=settings.embedding_model)
            except Exception as e:
                logger.error("Failed to initialize Ollama clients", endpoint=settings.endpoint, error=str(e))

        elif settings.provider == "openai":
            try:
                from langchain_openai import ChatOpenAI, OpenAIEmbeddings

                llm = ChatOpenAI(model=settings.model, api_key=settings.api_key or None, temperature=0.7)
                if settings.embedding_model:
                    embeddings = OpenAIEmbeddings(model=settings.embedding_model, api_key=settings.api_key or None)
            except Exception as e:
                logger.error("Failed to initialize OpenAI clients", error=str(e))

        logger.info(
            "Insight model configured",
            provider=settings.provider,
            suggestions=llm is not None,
            embeddings=embeddings is not None
        )
        return cls(llm=llm, embeddings=embeddings, streaming=streaming)

    def suggestions_available(self) -> bool:
        return self.llm is not None

    def embeddings_available(self) -> bool:
        return self.embeddings is not None

    def _build_messages(self, thought: Thought, context: Sequence[Thought]):
        lines = [
            f"Thought ({thought.type}, priority {thought.priority:.2f}): {_content_text(thought)}"
        ]
        if thought.metadata.tags:
            lines.append(f"Tags: {', '.join(thought.metadata.tags)}")

        related = list(context)[:MAX_CONTEXT_THOUGHTS]
        if related:
            lines.append("Related thoughts:")
            lines.extend(f"- ({item.type}) {_content_text(item)}" for item in related)

        lines.append("Suggest next steps, questions or refinements.")
        return [SystemMessage(content=SYSTEM_PROMPT), HumanMessage(content="\n".join(lines))]

    async def get_suggestions(self, thought: Thought, context: Sequence[Thought] = ()) -> List[str]:
        """Ask the model for suggestions; never raises"""

        if self.llm is None:
            return [NOT_CONFIGURED_MESSAGE]

        started = time.perf_counter()
        await self.streaming.send_status(f"Generating suggestions for {thought.id}")
        try:
            chain = self.llm | StrOutputParser()
            reply = await chain.ainvoke(self._build_messages(thought, context))
            suggestions = parse_suggestions(reply)
            metrics.record_latency("insight.suggestions", elapsed_ms(started))
            return suggestions
        except Exception as e:
            logger.error("Suggestion generation failed", thought_id=thought.id, error=str(e))
            metrics.increment_counter("insight.errors")
            await self.streaming.send_error(f"Suggestion generation failed: {e}", thought.id)
            return [ERROR_MESSAGE]

    async def embed(self, text: str) -> Optional[List[float]]:
        """Embed text; None when embeddings are unavailable or failed"""

        if self.embeddings is None or not text.strip():
            return None
        try:
            return await self.embeddings.aembed_query(text)
        except Exception as e:
            logger.warning("Embedding failed", error=str(e))
            metrics.increment_counter("insight.errors")
            return None
