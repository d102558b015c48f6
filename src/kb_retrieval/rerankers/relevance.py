"""Relevance reranking stage of the retrieval pipeline.

Scores each candidate against the query with a cross-encoder when one can be
loaded, and with the deterministic fallback scorer otherwise. Model loading is
lazy and bounded by a timeout. Batches are scored independently: a batch that
fails or times out is scored by the fallback, the rest keep their model scores.
"""

import asyncio
import logging
from collections.abc import Callable

from kb_retrieval.rerankers.base import PassageScorer
from kb_retrieval.rerankers.fallback import FallbackScorer
from kb_retrieval.types import RetrievalResult
from kb_retrieval.utils.metrics import record_degradation, record_rerank

logger = logging.getLogger(__name__)


def _load_cross_encoder(
    model_name: str, device: str | None, batch_size: int, max_length: int
) -> PassageScorer:
    from kb_retrieval.rerankers.cross_encoder import CrossEncoderScorer

    return CrossEncoderScorer(
        model_name=model_name,
        device=device,
        batch_size=batch_size,
        max_length=max_length,
    )


class RelevanceReranker:
    """Reranker with model scoring and per-batch deterministic fallback.

    After reranking, ``cross_encoder_score`` holds the relevance score and
    ``final_score`` is overwritten with it; the fusion score is kept in
    ``fused_score``.

    Attributes:
        model_name: Cross-encoder model name, or None for fallback-only scoring.
        batch_size: Passages per scoring batch.
        load_timeout_ms: Bound on model loading.
        batch_timeout_ms: Bound on scoring one batch with the model.
    """

    def __init__(
        self,
        model_name: str | None = None,
        device: str | None = None,
        batch_size: int = 8,
        max_length: int = 512,
        load_timeout_ms: int = 10000,
        batch_timeout_ms: int = 2000,
        model_scorer: PassageScorer | None = None,
        fallback: FallbackScorer | None = None,
        loader: Callable[..., PassageScorer] = _load_cross_encoder,
    ) -> None:
        """Initialize reranker.

        Args:
            model_name: Cross-encoder model name; None disables the model.
            device: Device for model inference.
            batch_size: Passages per scoring batch.
            max_length: Maximum model input length.
            load_timeout_ms: Timeout for loading the model.
            batch_timeout_ms: Timeout for scoring one batch with the model.
            model_scorer: Preloaded model scorer; skips lazy loading.
            fallback: Deterministic scorer; a default one if None.
            loader: Factory that builds the model scorer.
        """
        self.model_name = model_name
        self.device = device
        self.batch_size = max(1, batch_size)
        self.max_length = max_length
        self.load_timeout_ms = load_timeout_ms
        self.batch_timeout_ms = batch_timeout_ms
        self.fallback = fallback or FallbackScorer()
        self._loader = loader
        self._model: PassageScorer | None = model_scorer
        self._load_attempted = model_scorer is not None or model_name is None
        self._lock = asyncio.Lock()

    @property
    def model_available(self) -> bool:
        return self._model is not None

    async def load(self) -> bool:
        """Load the model scorer once, bounded by ``load_timeout_ms``.

        Returns:
            True if a model scorer is available.
        """
        async with self._lock:
            if self._load_attempted:
                return self._model is not None
            self._load_attempted = True

            try:
                self._model = await asyncio.wait_for(
                    asyncio.to_thread(
                        self._loader,
                        self.model_name,
                        self.device,
                        self.batch_size,
                        self.max_length,
                    ),
                    timeout=self.load_timeout_ms / 1000,
                )
                logger.info(f"Relevance model ready: {self.model_name}")
            except TimeoutError:
                logger.warning(
                    f"Relevance model load timed out after {self.load_timeout_ms}ms, "
                    "using fallback scorer"
                )
                record_degradation("reranker", "load_timeout")
            except Exception as e:
                logger.warning(f"Relevance model unavailable ({e}), using fallback scorer")
                record_degradation("reranker", "load_error")

            return self._model is not None

    async def rerank(
        self,
        query: str,
        results: list[RetrievalResult],
        top_k: int | None = None,
    ) -> list[RetrievalResult]:
        """Score and reorder candidates by relevance.

        Args:
            query: The original query.
            results: Fused retrieval candidates.
            top_k: Optional number of top results to keep.

        Returns:
            Candidates sorted by relevance score descending.
        """
        if not results:
            return []

        await self.load()

        reranked: list[RetrievalResult] = []
        for start in range(0, len(results), self.batch_size):
            batch = results[start : start + self.batch_size]
            scores, method = await self._score_batch(query, batch)
            record_rerank(method, len(batch))
            for result, score in zip(batch, scores, strict=True):
                fused = result.fused_score
                if fused is None:
                    fused = result.final_score
                reranked.append(
                    result.model_copy(
                        update={
                            "cross_encoder_score": score,
                            "final_score": score,
                            "fused_score": fused,
                            "rerank_method": method,
                        }
                    )
                )

        reranked.sort(key=lambda r: r.effective_score(), reverse=True)
        if top_k is not None:
            reranked = reranked[:top_k]
        return reranked

    async def _score_batch(
        self, query: str, batch: list[RetrievalResult]
    ) -> tuple[list[float], str]:
        texts = [r.text for r in batch]
        priors = [r.effective_score() for r in batch]

        if self._model is not None:
            try:
                scores = await asyncio.wait_for(
                    self._model.score_async(query, texts, priors),
                    timeout=self.batch_timeout_ms / 1000,
                )
                if len(scores) != len(batch):
                    raise ValueError(
                        f"model returned {len(scores)} scores for {len(batch)} passages"
                    )
                return list(scores), self._model.method
            except TimeoutError:
                logger.warning(
                    f"Relevance batch timed out after {self.batch_timeout_ms}ms, "
                    "using fallback for this batch"
                )
                record_degradation("reranker", "batch_timeout")
            except Exception as e:
                logger.warning(f"Relevance batch failed ({e}), using fallback for this batch")
                record_degradation("reranker", "batch_error")

        return self.fallback.score(query, texts, priors), self.fallback.method
