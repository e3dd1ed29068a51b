import pytest
from bson import ObjectId

import database
from schemas import Rider


def test_create_document_stamps_times(db, monkeypatch):
    monkeypatch.setattr(database, "db", db)
    new_id = database.create_document("rider", Rider(name="Asha", phone="9800000002"))

    doc = db["rider"].find_one({"_id": ObjectId(new_id)})
    assert doc["name"] == "Asha"
    assert doc["created_at"] is not None
    assert doc["updated_at"] == doc["created_at"]


def test_get_documents_filters_and_limits(db, monkeypatch):
    monkeypatch.setattr(database, "db", db)
    for i in range(3):
        database.create_document("driver", {"name": f"d{i}", "phone": str(i), "is_online": i != 1})

    assert len(database.get_documents("driver")) == 3
    assert [d["name"] for d in database.get_documents("driver", {"is_online": False})] == ["d1"]
    assert len(database.get_documents("driver", limit=2)) == 2


def test_unconfigured_database(monkeypatch):
    monkeypatch.setattr(database, "db", None)
    with pytest.raises(Exception, match="Database not available"):
        database.create_document("rider", {"name": "x"})


def test_object_id_passthrough():
    oid = ObjectId()
    assert database.object_id(str(oid)) == oid
    assert database.object_id(oid) is oid
    assert database.object_id("b1") == "b1"
