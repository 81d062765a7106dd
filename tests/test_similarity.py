"""Embedding generation, index rebuild and FAISS-backed search."""
from datetime import datetime, timezone

import numpy as np
import pytest
from sqlalchemy import func, select

from conftest import make_opportunity, make_org
from fundmatch.db.models import DocumentEmbedding, Opportunity, OrganizationDocument
from fundmatch.errors import SimilarityUnavailable
from fundmatch.matching.similarity import (
    FaissSimilarityProvider, SimilarityProvider, embedding_stats, generate_document_embeddings,
    generate_embeddings, rebuild_opportunity_index,
)


class KeywordEmbedder:
    """Three-axis toy embedding: AI, export, everything else."""

    def __init__(self):
        self.calls = 0

    def __call__(self, texts):
        self.calls += 1
        out = []
        for t in texts:
            if "AI" in t:
                out.append([1.0, 0.0, 0.0])
            elif "수출" in t:
                out.append([0.0, 1.0, 0.0])
            else:
                out.append([0.0, 0.0, 1.0])
        return np.array(out, dtype="float32")


def test_generate_embeddings(db):
    """Empty content is an error but still unflagged; the rest get vectors."""
    embed = KeywordEmbedder()
    make_opportunity(db, "AI 바우처", summary="AI 도입 지원")
    make_opportunity(db, "수출 바우처", summary="수출 마케팅")
    empty = make_opportunity(db, "")

    summary = generate_embeddings(db, batch_size=10, embed_fn=embed)

    assert (summary.processed, summary.success_count, summary.error_count) == (3, 2, 1)
    assert summary.errors == [{"opportunityId": empty.id, "error": "No content to embed"}]
    assert db.scalar(select(func.count()).select_from(DocumentEmbedding)) == 2
    assert db.scalar(select(func.count()).select_from(Opportunity).where(Opportunity.needs_embedding.is_(True))) == 0
    assert generate_embeddings(db, embed_fn=embed).processed == 0


def test_unchanged_content_is_not_reembedded(db):
    embed = KeywordEmbedder()
    opp = make_opportunity(db, "AI 바우처", summary="AI 도입 지원")
    generate_embeddings(db, embed_fn=embed)
    assert embed.calls == 1

    opp.needs_embedding = True
    db.commit()
    summary = generate_embeddings(db, embed_fn=embed)
    assert summary.success_count == 1
    assert embed.calls == 1

    opp.summary = "AI 및 수출 지원"
    opp.needs_embedding = True
    db.commit()
    generate_embeddings(db, embed_fn=embed)
    assert embed.calls == 2


def test_embedding_failure_leaves_row_flagged(db):
    def broken(texts):
        raise RuntimeError("model not loaded")

    opp = make_opportunity(db, "AI 바우처")
    summary = generate_embeddings(db, embed_fn=broken)
    assert summary.error_count == 1
    db.refresh(opp)
    assert opp.needs_embedding is True


def test_rebuild_and_search(db, tmp_path):
    embed = KeywordEmbedder()
    ai = make_opportunity(db, "AI 바우처", summary="AI 도입 지원")
    export = make_opportunity(db, "수출 바우처", summary="수출 마케팅")
    gone = make_opportunity(db, "AI 종료 공고", summary="AI")
    generate_embeddings(db, embed_fn=embed)
    gone.deleted_at = datetime.now(timezone.utc)
    db.commit()

    assert rebuild_opportunity_index(db, store_dir=tmp_path) == 2

    provider = FaissSimilarityProvider(store_dir=tmp_path, embed_fn=embed)
    assert provider.available() is True
    hits = provider.search("AI 스타트업", k=5)
    assert hits[0].source_id == ai.id
    assert hits[0].score == pytest.approx(1.0)
    assert {h.source_id for h in hits} == {ai.id, export.id}
    assert all(0.0 <= h.score <= 1.0 for h in hits)
    assert provider.search("   ", k=5) == []


def test_missing_index_is_unavailable(tmp_path):
    provider = FaissSimilarityProvider(store_dir=tmp_path, embed_fn=KeywordEmbedder())
    assert provider.available() is False
    with pytest.raises(SimilarityUnavailable):
        provider.search("AI", k=5)


def test_empty_rebuild_is_unavailable(db, tmp_path):
    assert rebuild_opportunity_index(db, store_dir=tmp_path) == 0
    assert FaissSimilarityProvider(store_dir=tmp_path, embed_fn=KeywordEmbedder()).available() is False


def test_delete_opportunity_drops_embedding(db):
    opp = make_opportunity(db, "AI 바우처")
    generate_embeddings(db, embed_fn=KeywordEmbedder())
    db.delete(opp)
    db.commit()
    assert db.scalar(select(func.count()).select_from(DocumentEmbedding)) == 0


def test_embedding_stats(db):
    make_opportunity(db, "AI 바우처")
    make_opportunity(db, "수출 바우처")
    generate_embeddings(db, batch_size=1, embed_fn=KeywordEmbedder())
    stats = embedding_stats(db)
    assert stats == {"totalOpportunities": 2, "needsEmbedding": 1, "hasEmbeddings": 1, "completionRate": 50}


def _document(db, org, summary, status="analyzed"):
    doc = OrganizationDocument(organization_id=org.id, document_type="사업계획서", status=status, summary=summary)
    db.add(doc)
    db.commit()
    return doc


def test_generate_document_embeddings(db):
    embed = KeywordEmbedder()
    org = make_org(db, "문서사")
    _document(db, org, "AI 솔루션 개발")
    _document(db, org, "초안", status="uploaded")

    summary = generate_document_embeddings(db, embed_fn=embed)
    assert (summary.processed, summary.success_count) == (1, 1)
    assert generate_document_embeddings(db, embed_fn=embed).processed == 0
    assert embed.calls == 1


def test_document_scores_blend_best_and_mean(db):
    """0.7 * best + 0.3 * mean over the documents; weak matches are dropped."""
    embed = KeywordEmbedder()
    ai = make_opportunity(db, "AI 바우처", summary="AI 도입 지원")
    export = make_opportunity(db, "수출 바우처", summary="수출 마케팅")
    generate_embeddings(db, embed_fn=embed)

    org = make_org(db, "문서사")
    plan = _document(db, org, "AI 솔루션 개발")
    _document(db, org, "제조 공정 소개")
    generate_document_embeddings(db, embed_fn=embed)

    provider = SimilarityProvider()
    assert provider.document_scores(db, org.id, [ai.id, export.id]) == {ai.id: pytest.approx(0.85)}

    plan.deleted_at = datetime.now(timezone.utc)
    db.commit()
    assert provider.document_scores(db, org.id, [ai.id, export.id]) == {}
    assert provider.document_scores(db, make_org(db, "빈 회사").id, [ai.id]) == {}
