from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import Callable, Dict, List, Optional
import hashlib
import json
import logging
import os
import threading

import faiss
import numpy as np
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from fundmatch.config import get_settings
from fundmatch.db.models import (
    DocumentEmbedding, Opportunity, OrganizationDocument,
    SOURCE_ORGANIZATION_DOCUMENT, SOURCE_SUPPORT_PROJECT,
)
from fundmatch.errors import SimilarityUnavailable

logger = logging.getLogger(__name__)

INDEX_FILE = "opportunities.faiss"
IDS_FILE = "opportunities_ids.json"

# Document matching: best and mean cosine over at most DOCUMENT_LIMIT uploads,
# kept only when the best document clears DOCUMENT_FLOOR.
DOCUMENT_LIMIT = 50
DOCUMENT_FLOOR = 0.3
DOCUMENT_BEST_WEIGHT = 0.7

EmbedFn = Callable[[List[str]], np.ndarray]


@lru_cache(maxsize=2)
def _model(name: str):
    from sentence_transformers import SentenceTransformer
    logger.info("Loading embedding model %s", name)
    return SentenceTransformer(name)


def embed(texts: list[str]) -> np.ndarray:
    vecs = _model(get_settings().embed_model).encode(
        texts, batch_size=32, show_progress_bar=False, convert_to_numpy=True
    )
    normalization = np.linalg.norm(vecs, axis=1, keepdims=True) + 1e-12
    return (vecs / normalization).astype("float32")


def build_opportunity_text(opp: Opportunity) -> str:
    parts = [opp.name, opp.summary, opp.description, opp.eligibility, opp.target]
    return "\n\n".join(p.strip() for p in parts if p and p.strip())


def build_document_text(doc: OrganizationDocument) -> str:
    insights = ", ".join(doc.key_insights or [])
    parts = [doc.document_type, doc.summary, insights]
    return "\n\n".join(p.strip() for p in parts if p and p.strip())


def content_hash(text: str) -> str:
    return "sha256:" + hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class SimilarityHit:
    source_id: int
    score: float


class SimilarityProvider:
    """Ranks catalog opportunities by vector-space closeness to a text blob."""

    def available(self) -> bool:
        return True

    def search(self, text: str, k: int) -> List[SimilarityHit]:
        raise NotImplementedError

    def document_scores(self, db: Session, organization_id: int,
                        opportunity_ids: List[int]) -> Dict[int, float]:
        """
        Score opportunities against the organization's analyzed document vectors.

        Per opportunity: 0.7 * best cosine + 0.3 * mean cosine across the documents,
        dropped when the best one is at or below DOCUMENT_FLOOR. Empty when the
        organization has no embedded documents.
        """
        if not opportunity_ids:
            return {}
        doc_vectors = db.execute(
            select(DocumentEmbedding.vector)
            .join(OrganizationDocument, OrganizationDocument.id == DocumentEmbedding.source_id)
            .where(DocumentEmbedding.source_type == SOURCE_ORGANIZATION_DOCUMENT)
            .where(OrganizationDocument.organization_id == organization_id)
            .where(OrganizationDocument.deleted_at.is_(None))
            .order_by(OrganizationDocument.id.asc())
            .limit(DOCUMENT_LIMIT)
        ).scalars().all()
        if not doc_vectors:
            return {}

        rows = db.execute(
            select(DocumentEmbedding.source_id, DocumentEmbedding.vector)
            .where(DocumentEmbedding.source_type == SOURCE_SUPPORT_PROJECT)
            .where(DocumentEmbedding.source_id.in_(opportunity_ids))
        ).all()
        if not rows:
            return {}

        docs = np.array(doc_vectors, dtype="float32")
        opps = np.array([r.vector for r in rows], dtype="float32")
        if docs.shape[1] != opps.shape[1]:
            logger.warning("Document vectors (dim=%d) do not match opportunity vectors (dim=%d) for org=%s",
                           docs.shape[1], opps.shape[1], organization_id)
            return {}

        sims = opps @ docs.T
        best = sims.max(axis=1)
        mean = sims.mean(axis=1)
        scores: Dict[int, float] = {}
        for row, b, m in zip(rows, best, mean):
            if b > DOCUMENT_FLOOR:
                combined = DOCUMENT_BEST_WEIGHT * float(b) + (1 - DOCUMENT_BEST_WEIGHT) * float(m)
                scores[int(row.source_id)] = max(0.0, min(1.0, combined))
        return scores


class FaissSimilarityProvider(SimilarityProvider):
    def __init__(self, store_dir: Optional[Path] = None, embed_fn: Optional[EmbedFn] = None):
        self.store_dir = Path(store_dir or get_settings().vector_store_dir)
        self.embed_fn = embed_fn or embed
        self._lock = threading.Lock()
        self._index = None
        self._mtime: Optional[float] = None

    @property
    def index_path(self) -> Path:
        return self.store_dir / INDEX_FILE

    def _load_index(self):
        if not self.index_path.exists():
            return None
        mtime = self.index_path.stat().st_mtime
        with self._lock:
            if self._index is None or self._mtime != mtime:
                self._index = faiss.read_index(str(self.index_path))
                self._mtime = mtime
                logger.info("Loaded opportunity index (%d vectors)", self._index.ntotal)
            return self._index

    def available(self) -> bool:
        index = self._load_index()
        return index is not None and index.ntotal > 0

    def search(self, text: str, k: int) -> List[SimilarityHit]:
        index = self._load_index()
        if index is None or index.ntotal == 0:
            raise SimilarityUnavailable(f"No opportunity vectors at {self.index_path}")
        if not text.strip():
            return []
        qv = self.embed_fn([text])
        scores, ids = index.search(qv, min(k, index.ntotal))

        hits: List[SimilarityHit] = []
        for fid, score in zip(ids[0], scores[0]):
            if int(fid) == -1:
                continue
            hits.append(SimilarityHit(source_id=int(fid), score=max(0.0, min(1.0, float(score)))))
        return hits


# ---------- Embedding generation ----------

@dataclass
class EmbeddingBatchSummary:
    processed: int = 0
    success_count: int = 0
    error_count: int = 0
    errors: List[Dict[str, object]] = field(default_factory=list)


def _upsert_embedding(db: Session, source_id: int, text: str, vector: np.ndarray, model: str, meta: dict,
                      source_type: str = SOURCE_SUPPORT_PROJECT) -> None:
    row = db.execute(
        select(DocumentEmbedding)
        .where(DocumentEmbedding.source_type == source_type)
        .where(DocumentEmbedding.source_id == source_id)
    ).scalar_one_or_none()
    if row is None:
        row = DocumentEmbedding(source_type=source_type, source_id=source_id)
        db.add(row)
    row.content_hash = content_hash(text)
    row.vector = [float(x) for x in vector]
    row.model = model
    row.metadata_ = meta


def generate_embeddings(db: Session, batch_size: int = 50, embed_fn: Optional[EmbedFn] = None) -> EmbeddingBatchSummary:
    """Embed opportunities flagged ``needs_embedding``; failed rows stay flagged for the next run."""
    embed_fn = embed_fn or embed
    model = get_settings().embed_model
    rows = db.execute(
        select(Opportunity)
        .where(Opportunity.needs_embedding.is_(True))
        .where(Opportunity.deleted_at.is_(None))
        .order_by(Opportunity.updated_at.desc())
        .limit(batch_size)
    ).scalars().all()

    summary = EmbeddingBatchSummary(processed=len(rows))
    if not rows:
        logger.info("No opportunities need embeddings")
        return summary

    logger.info("Embedding %d opportunity(ies)", len(rows))
    for opp in rows:
        try:
            text = build_opportunity_text(opp)
            if not text:
                opp.needs_embedding = False
                db.commit()
                summary.error_count += 1
                summary.errors.append({"opportunityId": opp.id, "error": "No content to embed"})
                continue

            existing_hash = db.scalar(
                select(DocumentEmbedding.content_hash)
                .where(DocumentEmbedding.source_type == SOURCE_SUPPORT_PROJECT)
                .where(DocumentEmbedding.source_id == opp.id)
            )
            if existing_hash != content_hash(text):
                vec = embed_fn([text])[0]
                _upsert_embedding(db, opp.id, text, vec, model, {
                    "name": opp.name,
                    "generated_at": datetime.now(timezone.utc).isoformat(),
                })
            opp.needs_embedding = False
            db.commit()
            summary.success_count += 1
        except Exception as e:
            db.rollback()
            summary.error_count += 1
            summary.errors.append({"opportunityId": opp.id, "error": str(e)})
            logger.error("Embedding failed for opportunity=%s: %s", opp.id, e, exc_info=True)

    logger.info("Embedding batch complete: %d success, %d errors", summary.success_count, summary.error_count)
    return summary


def generate_document_embeddings(db: Session, batch_size: int = 50,
                                 embed_fn: Optional[EmbedFn] = None) -> EmbeddingBatchSummary:
    """Embed analyzed organization documents whose text changed since their last vector."""
    embed_fn = embed_fn or embed
    model = get_settings().embed_model
    docs = db.execute(
        select(OrganizationDocument)
        .where(OrganizationDocument.deleted_at.is_(None))
        .where(OrganizationDocument.status == "analyzed")
        .where(OrganizationDocument.summary.is_not(None))
        .order_by(OrganizationDocument.id.asc())
    ).scalars().all()
    hashes = dict(db.execute(
        select(DocumentEmbedding.source_id, DocumentEmbedding.content_hash)
        .where(DocumentEmbedding.source_type == SOURCE_ORGANIZATION_DOCUMENT)
    ).all())
    pending = [d for d in docs if hashes.get(d.id) != content_hash(build_document_text(d))][:batch_size]

    summary = EmbeddingBatchSummary(processed=len(pending))
    if not pending:
        logger.info("No organization documents need embeddings")
        return summary

    logger.info("Embedding %d organization document(s)", len(pending))
    for doc in pending:
        try:
            text = build_document_text(doc)
            vec = embed_fn([text])[0]
            _upsert_embedding(db, doc.id, text, vec, model, {
                "organization_id": doc.organization_id,
                "document_type": doc.document_type,
                "generated_at": datetime.now(timezone.utc).isoformat(),
            }, source_type=SOURCE_ORGANIZATION_DOCUMENT)
            db.commit()
            summary.success_count += 1
        except Exception as e:
            db.rollback()
            summary.error_count += 1
            summary.errors.append({"documentId": doc.id, "error": str(e)})
            logger.error("Embedding failed for document=%s: %s", doc.id, e, exc_info=True)

    logger.info("Document embedding batch complete: %d success, %d errors",
                summary.success_count, summary.error_count)
    return summary


# ---------- Index rebuild ----------

def _fsync_dir(path: Path) -> None:
    flags = getattr(os, "O_RDONLY", 0) | getattr(os, "O_DIRECTORY", 0)
    try:
        fd = os.open(str(path.parent), flags)
    except OSError:
        return
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def _atomic_write_json(data, path: Path) -> None:
    tmp = path.with_suffix(path.suffix + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(data, f)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)
    _fsync_dir(path)


def _atomic_write_faiss(index, path: Path) -> None:
    tmp = path.with_suffix(path.suffix + ".tmp")
    faiss.write_index(index, str(tmp))
    os.replace(tmp, path)
    _fsync_dir(path)


def rebuild_opportunity_index(db: Session, store_dir: Optional[Path] = None) -> int:
    """Rebuild the FAISS index from stored vectors of active opportunities."""
    store = Path(store_dir or get_settings().vector_store_dir)
    store.mkdir(parents=True, exist_ok=True)

    rows = db.execute(
        select(DocumentEmbedding.source_id, DocumentEmbedding.vector)
        .join(Opportunity, Opportunity.id == DocumentEmbedding.source_id)
        .where(DocumentEmbedding.source_type == SOURCE_SUPPORT_PROJECT)
        .where(Opportunity.deleted_at.is_(None))
        .where(Opportunity.status == "active")
    ).all()

    if not rows:
        _atomic_write_faiss(faiss.IndexIDMap2(faiss.IndexFlatIP(1)), store / INDEX_FILE)
        _atomic_write_json([], store / IDS_FILE)
        logger.info("Opportunity index: no vectors; wrote empty index.")
        return 0

    ids = np.array([r.source_id for r in rows], dtype="int64")
    vectors = np.array([r.vector for r in rows], dtype="float32")
    index = faiss.IndexIDMap2(faiss.IndexFlatIP(vectors.shape[1]))
    index.add_with_ids(vectors, ids)

    _atomic_write_faiss(index, store / INDEX_FILE)
    _atomic_write_json([int(i) for i in ids], store / IDS_FILE)
    logger.info("Opportunity index: indexed %d vectors.", len(rows))
    return len(rows)


def embedding_stats(db: Session) -> Dict[str, object]:
    total = db.scalar(select(func.count()).select_from(Opportunity).where(Opportunity.deleted_at.is_(None))) or 0
    needs = db.scalar(
        select(func.count()).select_from(Opportunity)
        .where(Opportunity.deleted_at.is_(None))
        .where(Opportunity.needs_embedding.is_(True))
    ) or 0
    has = db.scalar(
        select(func.count(func.distinct(DocumentEmbedding.source_id)))
        .where(DocumentEmbedding.source_type == SOURCE_SUPPORT_PROJECT)
    ) or 0
    return {
        "totalOpportunities": total,
        "needsEmbedding": needs,
        "hasEmbeddings": has,
        "completionRate": round(has / total * 100) if total else 0,
    }
