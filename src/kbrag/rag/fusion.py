"""Reciprocal Rank Fusion."""

from collections.abc import Sequence

from .document import RetrievalResult

DEFAULT_RRF_K = 60


def reciprocal_rank_fusion(
    ranked_lists: Sequence[Sequence[str]],
    rrf_k: int = DEFAULT_RRF_K,
    top_k: int | None = None,
) -> list[tuple[str, float]]:
    """Fuse ranked id lists with Reciprocal Rank Fusion.

    Every id scores ``1 / (rrf_k + rank)`` for each list it appears in, where
    rank is 1-based; lists it is absent from contribute nothing. Ties keep the
    order in which ids were first seen, earlier lists first.

    Args:
        ranked_lists: Ranked ids, best first, one sequence per signal
        rrf_k: Smoothing constant; larger values flatten the blend
        top_k: Number of ids to keep (all if None)

    Returns:
        (id, fused score) pairs sorted by descending score
    """
    if rrf_k < 0:
        raise ValueError("rrf_k must be non-negative")

    scores: dict[str, float] = {}
    for ranked in ranked_lists:
        seen: set[str] = set()
        for rank, item_id in enumerate(ranked, start=1):
            # A duplicated id only counts at its best rank within one list
            if item_id in seen:
                continue
            seen.add(item_id)
            scores[item_id] = scores.get(item_id, 0.0) + 1.0 / (rrf_k + rank)

    fused = sorted(scores.items(), key=lambda x: x[1], reverse=True)
    return fused if top_k is None else fused[:top_k]


def fuse_results(
    semantic: Sequence[RetrievalResult],
    lexical: Sequence[RetrievalResult],
    rrf_k: int = DEFAULT_RRF_K,
    top_k: int | None = None,
) -> list[RetrievalResult]:
    """Fuse semantic and lexical result rows into hybrid rows.

    The returned rows carry the fused score along with the 1-based position of
    the chunk in each input list (None when absent).
    """
    rows: dict[str, RetrievalResult] = {}
    semantic_ranks: dict[str, int] = {}
    lexical_ranks: dict[str, int] = {}

    for rank, row in enumerate(semantic, start=1):
        rows.setdefault(row.chunk_id, row)
        semantic_ranks.setdefault(row.chunk_id, rank)
    for rank, row in enumerate(lexical, start=1):
        rows.setdefault(row.chunk_id, row)
        lexical_ranks.setdefault(row.chunk_id, rank)

    fused = reciprocal_rank_fusion(
        [[r.chunk_id for r in semantic], [r.chunk_id for r in lexical]],
        rrf_k=rrf_k,
        top_k=top_k,
    )

    return [
        rows[chunk_id].model_copy(update={
            "score": score,
            "semantic_rank": semantic_ranks.get(chunk_id),
            "lexical_rank": lexical_ranks.get(chunk_id),
        })
        for chunk_id, score in fused
    ]
