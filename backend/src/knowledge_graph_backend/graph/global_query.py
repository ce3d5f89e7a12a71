"""Map-reduce answering of whole-graph questions over community summaries.

MAP: each of the largest communities is asked, through its summary, what it
knows about the question. REDUCE: the most relevant informative partial
answers are synthesized into one answer citing ``[Source N]``.
"""

import time
from typing import Optional, Sequence

import structlog

from .models import (
    CommunitySummary,
    GlobalQueryMetadata,
    GlobalQueryResult,
    PartialAnswer,
    ReducedAnswer,
)
from .protocols import CompletionClient
from .summaries import CommunitySummaryService

logger = structlog.get_logger(__name__)

NO_CONTEXT_ANSWER = "No relevant community context found to answer this question."
NO_INFORMATION_ANSWER = "Community summaries did not contain relevant information for this query."
NO_INFORMATION_MARKER = "No relevant information in this community."

MAP_MAX_TOKENS = 200
REDUCE_MAX_TOKENS = 800
MIN_QUERY_WORD_LENGTH = 4

MAP_SYSTEM_PROMPT = f"""You are analyzing a knowledge community to answer a question.
Based on the community summary, provide any relevant information that helps answer the question.
If the community doesn't contain relevant information, respond with "{NO_INFORMATION_MARKER}"
Be concise and specific."""

REDUCE_SYSTEM_PROMPT = """You are a knowledge synthesis assistant. Your task is to combine multiple partial answers from different knowledge communities into a single, coherent, comprehensive answer.

Guidelines:
- Synthesize information from all sources, don't just concatenate
- Resolve any contradictions by noting different perspectives
- Cite sources using [Source N] notation
- Be comprehensive but concise
- If information is incomplete, acknowledge gaps
- Focus on answering the specific question asked"""


def calculate_relevance(query: str, summary: CommunitySummary) -> float:
    """Lexical overlap between a query and a community summary.

    Counts query words of at least four characters found in the summary's
    title, text and key entities, divided by the total number of query words.
    """
    words = query.lower().split()
    if not words:
        return 0.0
    text = " ".join([summary.title, summary.summary, *summary.key_entities]).lower()
    matches = sum(1 for word in words if len(word) >= MIN_QUERY_WORD_LENGTH and word in text)
    return matches / len(words)


def calculate_confidence(partials: Sequence[PartialAnswer]) -> float:
    if not partials:
        return 0.0
    average_relevance = sum(p.relevance for p in partials) / len(partials)
    source_factor = min(len(partials) / 3, 1.0)
    return min(average_relevance * 0.6 + source_factor * 0.4, 1.0)


def is_informative(answer: str) -> bool:
    text = answer.strip()
    return bool(text) and not text.lower().startswith(NO_INFORMATION_MARKER.lower().rstrip("."))


class GlobalQueryEngine:
    """Answer whole-graph questions from community summaries.

    Attributes:
        max_communities: Communities consulted in the map phase, largest first
        top_k: Informative partial answers kept for the reduce phase
    """

    def __init__(
        self,
        summaries: CommunitySummaryService,
        completion: CompletionClient,
        max_communities: int = 10,
        top_k: int = 5,
    ) -> None:
        self._summaries = summaries
        self._completion = completion
        self.max_communities = max_communities
        self.top_k = top_k

    async def _load_summaries(self, force_refresh: bool) -> dict[str, CommunitySummary]:
        if not force_refresh:
            summaries = await self._summaries.get_all_summaries_with_storage()
            if summaries:
                return summaries
        result = await self._summaries.generate_all_summaries(force_refresh=force_refresh)
        return result.summaries

    async def map_communities_to_partial_answers(
        self,
        query: str,
        max_communities: Optional[int] = None,
        force_refresh: bool = False,
    ) -> tuple[list[PartialAnswer], float]:
        """MAP phase: ask each of the largest communities about ``query``.

        Communities are processed sequentially. A community whose completion
        fails is recorded as non-informative with its error.

        Returns:
            Partial answers sorted by relevance (descending), and the elapsed
            time in milliseconds
        """
        start_time = time.perf_counter()
        limit = self.max_communities if max_communities is None else max_communities
        summaries = await self._load_summaries(force_refresh)
        selected = sorted(
            summaries.items(), key=lambda item: item[1].member_count, reverse=True
        )[:limit]

        partials: list[PartialAnswer] = []
        for community_id, summary in selected:
            relevance = calculate_relevance(query, summary)
            title = summary.title or f"Community {community_id}"
            try:
                answer = await self._completion.get_chat_completion(
                    _map_messages(query, summary), max_tokens=MAP_MAX_TOKENS
                )
            except Exception as e:
                logger.warning(
                    "partial_answer_failed", community_id=community_id, error=str(e)
                )
                partials.append(
                    PartialAnswer(
                        community_id=community_id,
                        title=title,
                        answer="",
                        relevance=relevance,
                        member_count=summary.member_count,
                        has_information=False,
                        error=str(e),
                    )
                )
                continue
            partials.append(
                PartialAnswer(
                    community_id=community_id,
                    title=title,
                    answer=answer.strip(),
                    relevance=relevance,
                    member_count=summary.member_count,
                    has_information=is_informative(answer),
                )
            )

        partials.sort(key=lambda partial: partial.relevance, reverse=True)
        elapsed = _elapsed_ms(start_time)
        logger.info(
            "map_phase_completed",
            communities_processed=len(selected),
            informative_count=sum(1 for p in partials if p.has_information),
            execution_time_ms=elapsed,
        )
        return partials, elapsed

    async def reduce_partial_answers(
        self,
        query: str,
        partial_answers: Sequence[PartialAnswer],
        top_k: Optional[int] = None,
    ) -> ReducedAnswer:
        """REDUCE phase: synthesize the most relevant informative partial answers.

        Never calls the completion client without sources. If synthesis
        fails the informative partial answers are returned concatenated.
        """
        start_time = time.perf_counter()
        if not partial_answers:
            return ReducedAnswer(answer=NO_CONTEXT_ANSWER, confidence=0.0)

        informative = sorted(
            (p for p in partial_answers if p.has_information and p.answer.strip()),
            key=lambda partial: partial.relevance,
            reverse=True,
        )[: self.top_k if top_k is None else top_k]
        if not informative:
            return ReducedAnswer(
                answer=NO_INFORMATION_ANSWER,
                confidence=0.0,
                partial_answers_considered=len(partial_answers),
                reduce_time_ms=_elapsed_ms(start_time),
            )

        sources = [f"[Source {index}: {p.title}]" for index, p in enumerate(informative, start=1)]
        sources_text = "\n\n".join(
            f"{source}\n{partial.answer}" for source, partial in zip(sources, informative)
        )
        messages = [
            {"role": "system", "content": REDUCE_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": f"""Question: {query}

Partial answers from knowledge communities:

{sources_text}

Please synthesize these partial answers into a comprehensive response to the question.""",
            },
        ]
        try:
            answer = await self._completion.get_chat_completion(
                messages, max_tokens=REDUCE_MAX_TOKENS
            )
        except Exception as e:
            logger.error("reduce_phase_failed", error=str(e), source_count=len(informative))
            answer = sources_text

        return ReducedAnswer(
            answer=answer.strip(),
            confidence=calculate_confidence(informative),
            sources=sources,
            partial_answers_considered=len(informative),
            reduce_time_ms=_elapsed_ms(start_time),
        )

    async def global_query(
        self,
        query: str,
        max_communities: Optional[int] = None,
        top_k: Optional[int] = None,
        force_refresh: bool = False,
    ) -> GlobalQueryResult:
        """Answer ``query`` with a sequential map phase followed by a reduce phase."""
        start_time = time.perf_counter()
        partials, map_time_ms = await self.map_communities_to_partial_answers(
            query, max_communities=max_communities, force_refresh=force_refresh
        )
        reduced = await self.reduce_partial_answers(query, partials, top_k=top_k)

        result = GlobalQueryResult(
            query=query,
            answer=reduced.answer,
            confidence=reduced.confidence,
            sources=reduced.sources,
            partial_answers=partials,
            metadata=GlobalQueryMetadata(
                communities_analyzed=len(partials),
                informative_count=sum(1 for p in partials if p.has_information),
                map_phase_time_ms=map_time_ms,
                reduce_phase_time_ms=reduced.reduce_time_ms,
                total_time_ms=_elapsed_ms(start_time),
            ),
        )
        logger.info(
            "global_query_completed",
            communities_analyzed=result.metadata.communities_analyzed,
            informative_count=result.metadata.informative_count,
            confidence=round(result.confidence, 3),
            total_time_ms=result.metadata.total_time_ms,
        )
        return result


def _map_messages(query: str, summary: CommunitySummary) -> list[dict[str, str]]:
    key_entities = ", ".join(summary.key_entities) or "N/A"
    return [
        {"role": "system", "content": MAP_SYSTEM_PROMPT},
        {
            "role": "user",
            "content": f"""Community: {summary.title}
Summary: {summary.summary}
Key Entities: {key_entities}

Question: {query}

What relevant information does this community provide?""",
        },
    ]


def _elapsed_ms(start_time: float) -> float:
    return round((time.perf_counter() - start_time) * 1000, 3)
