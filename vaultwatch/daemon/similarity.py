"""
Vector similarity ranking and organization suggestions.

All scoring is cosine similarity over item embeddings. Organization
suggestions compare unfiled items against per-target centroids (or against
target members) and only ever return proposals; nothing is moved here.
"""

import re
from collections import Counter
from typing import Dict, List, Optional, Sequence, Tuple, Iterable, Mapping

import numpy as np
from loguru import logger

from .models import IndexedItem, OrganizationSuggestion, OrganizationTarget, SimilarityResult


STOP_WORDS = frozenset({
    'a', 'an', 'the', 'and', 'or', 'but', 'of', 'to', 'in', 'on', 'at', 'for', 'with',
    'by', 'about', 'as', 'into', 'like', 'through', 'after', 'over', 'between', 'out',
    'is', 'are', 'was', 'were', 'be', 'been', 'being', 'have', 'has', 'had', 'do',
    'does', 'did', 'can', 'could', 'will', 'would', 'should', 'may', 'might', 'must',
    'this', 'that', 'these', 'those', 'it', 'they', 'them', 'their',
})

_NON_WORD = re.compile(r"[^\w]")


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity in [-1, 1]; 0.0 when either vector has zero norm
    or the score is not finite.

    Raises:
        ValueError: if the vectors differ in length
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError(f"Vector dimensions differ: {va.shape} vs {vb.shape}")

    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    score = float(np.dot(va, vb) / (norm_a * norm_b))
    if not np.isfinite(score):
        return 0.0
    return max(-1.0, min(1.0, score))


def find_similar(
    target: Sequence[float],
    candidates: Iterable[Tuple[str, Optional[Sequence[float]]]],
    threshold: float = 0.3,
    max_results: int = 5,
) -> List[SimilarityResult]:
    """
    Rank ``(item_id, vector)`` candidates against ``target``.

    Candidates without a vector are skipped. Results have
    ``score >= threshold``, are sorted by descending score with ties kept
    in input order, and are truncated to ``max_results``.
    """
    if max_results <= 0:
        return []

    scored: List[Tuple[str, float]] = []
    for item_id, vector in candidates:
        if vector is None or len(vector) == 0:
            continue
        try:
            score = cosine_similarity(target, vector)
        except ValueError as e:
            logger.warning(f"Skipping {item_id} in similarity ranking: {e}")
            continue
        if score >= threshold:
            scored.append((item_id, score))

    # sorted() is stable, so equal scores keep candidate order
    ranked = sorted(scored, key=lambda pair: -pair[1])[:max_results]
    return [
        SimilarityResult(item_id=item_id, score=score, rank=rank)
        for rank, (item_id, score) in enumerate(ranked, start=1)
    ]


def find_similar_items(
    item_id: str,
    items: Sequence[IndexedItem],
    threshold: float = 0.3,
    max_results: int = 5,
) -> List[SimilarityResult]:
    """Nearest neighbours of one indexed item among the other live items."""
    source = next((i for i in items if i.id == item_id), None)
    if source is None or not source.embedding_vector:
        return []

    candidates = (
        (item.id, item.embedding_vector)
        for item in items
        if item.id != item_id and not item.is_deleted
    )
    return find_similar(source.embedding_vector, candidates, threshold, max_results)


def compute_centroid(vectors: Iterable[Sequence[float]]) -> Optional[List[float]]:
    """Mean of the given vectors, or None when there are none."""
    stacked = [np.asarray(v, dtype=np.float64) for v in vectors if v is not None and len(v) > 0]
    if not stacked:
        return None
    dims = {v.shape for v in stacked}
    if len(dims) > 1:
        raise ValueError(f"Cannot average vectors of different dimensions: {dims}")
    return np.mean(np.vstack(stacked), axis=0).tolist()


def text_similarity(text1: str, text2: str) -> float:
    """Jaccard similarity over lower-cased words longer than two characters."""
    words1 = {w for w in text1.lower().split() if len(w) > 2}
    words2 = {w for w in text2.lower().split() if len(w) > 2}
    if not words1 or not words2:
        return 0.0
    common = len(words1 & words2)
    union = len(words1) + len(words2) - common
    return common / union if union else 0.0


def extract_key_terms(text: str, max_terms: int = 10) -> List[str]:
    """Most frequent non-stop-words longer than three characters."""
    if not text or len(text) < 10:
        return []

    words = []
    for raw in text.lower().split():
        if len(raw) <= 3 or raw in STOP_WORDS:
            continue
        word = _NON_WORD.sub("", raw)
        if word:
            words.append(word)

    return [word for word, _ in Counter(words).most_common(max_terms)]


def _item_title(item: IndexedItem) -> str:
    return item.filename


def _heuristic_match(item: IndexedItem, target: OrganizationTarget) -> Tuple[float, str]:
    """Name-based score for items that have no embedding yet."""
    name = target.name.lower()
    title = _item_title(item).lower()
    content = (item.text_content or item.filename).lower()

    score = 0.0
    reasons = []
    if name and name in title:
        score += 0.5
        reasons.append(f'folder name "{target.name}" appears in item title')
    if name and name in content:
        score += 0.3
        reasons.append(f'folder name "{target.name}" appears in item content')
    overlap = text_similarity(target.name, content)
    if overlap > 0.1:
        score += overlap * 0.4
        reasons.append(f'shares vocabulary with "{target.name}"')
    return score, "; ".join(reasons)


def suggest_organization(
    items: Sequence[IndexedItem],
    targets: Sequence[OrganizationTarget],
    assignments: Optional[Mapping[str, str]] = None,
    threshold: float = 0.7,
    use_centroids: bool = True,
) -> List[OrganizationSuggestion]:
    """
    Propose a target for every unfiled item whose best match clears
    ``threshold``.

    ``assignments`` maps item id to target id for items already filed;
    target membership also counts as filed. Items with a vector are scored
    by cosine similarity against each target's centroid (or best member when
    ``use_centroids`` is False); items without one fall back to name
    heuristics. Suggestions are sorted by confidence, highest first.
    """
    assignments = dict(assignments or {})
    for target in targets:
        for member_id in target.member_ids:
            assignments.setdefault(member_id, target.id)

    by_id: Dict[str, IndexedItem] = {item.id: item for item in items}
    member_vectors: Dict[str, List[Sequence[float]]] = {}
    centroids: Dict[str, Optional[List[float]]] = {}
    for target in targets:
        vectors = [
            by_id[m].embedding_vector for m in target.member_ids
            if m in by_id and by_id[m].embedding_vector and not by_id[m].is_deleted
        ]
        member_vectors[target.id] = vectors
        try:
            centroids[target.id] = compute_centroid(vectors)
        except ValueError as e:
            logger.warning(f"No centroid for target {target.id}: {e}")
            centroids[target.id] = None

    suggestions: List[OrganizationSuggestion] = []
    for item in items:
        if item.is_deleted or item.id in assignments:
            continue

        best: Optional[Tuple[str, float, str]] = None
        for target in targets:
            if item.embedding_vector:
                score = _vector_match(item, target, centroids, member_vectors, use_centroids)
                if score is None:
                    continue
                reason = f'similar to content in "{target.name}"'
            else:
                if not (item.text_content or "").strip():
                    continue
                score, reason = _heuristic_match(item, target)
                if score <= 0:
                    continue

            if best is None or score > best[1]:
                best = (target.id, score, reason)

        if best is not None and best[1] >= threshold:
            suggestions.append(OrganizationSuggestion(
                item_id=item.id,
                target_id=best[0],
                confidence=best[1],
                reason=best[2],
            ))

    return sorted(suggestions, key=lambda s: -s.confidence)


def _vector_match(
    item: IndexedItem,
    target: OrganizationTarget,
    centroids: Mapping[str, Optional[List[float]]],
    member_vectors: Mapping[str, List[Sequence[float]]],
    use_centroids: bool,
) -> Optional[float]:
    try:
        if use_centroids:
            centroid = centroids.get(target.id)
            if centroid is None:
                return None
            return cosine_similarity(item.embedding_vector, centroid)

        scores = [cosine_similarity(item.embedding_vector, v) for v in member_vectors.get(target.id, [])]
        return max(scores) if scores else None
    except ValueError as e:
        logger.warning(f"Cannot compare {item.id} with target {target.id}: {e}")
        return None
