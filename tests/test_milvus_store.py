"""Tests for the Milvus store schema and write checks, with pymilvus mocked out."""

from unittest.mock import patch

import pytest

from conftest import make_chunk
from maktaba.exceptions import StorageError
from maktaba.rag.vectorstore import MilvusStore


@pytest.fixture
def milvus(settings):
    with patch("maktaba.rag.vectorstore.connections"), patch(
        "maktaba.rag.vectorstore.utility"
    ) as utility, patch("maktaba.rag.vectorstore.Collection") as collection, patch(
        "maktaba.rag.vectorstore.FieldSchema"
    ) as field_schema, patch("maktaba.rag.vectorstore.CollectionSchema"):
        utility.has_collection.return_value = False
        yield MilvusStore(settings), collection.return_value, field_schema


def test_chunk_id_field_fits_the_longest_document_id(milvus):
    _, _, field_schema = milvus
    fields = {call.kwargs["name"]: call.kwargs for call in field_schema.call_args_list}

    longest_document_id = "d" * fields["document_id"]["max_length"]

    assert fields["id"]["is_primary"]
    assert len(f"{longest_document_id}-p9999-c99") <= fields["id"]["max_length"]


def test_upsert_writes_rows(milvus):
    store, collection, _ = milvus

    assert store.upsert_chunks([make_chunk("doc1", 1, "Notes on river journeys.")]) == 1
    [rows] = collection.upsert.call_args.args
    assert rows[0]["id"] == "doc1-p1-c0"


def test_overlong_document_id_is_rejected(milvus):
    store, collection, _ = milvus

    with pytest.raises(StorageError):
        store.upsert_chunks([make_chunk("d" * 65, 1, "Notes on river journeys.")])

    collection.upsert.assert_not_called()
