import pytest

from conftest import make_product
from database import create_document


@pytest.fixture
def golf():
    make_id = create_document("vehiclemake", {"name": "Volkswagen"})
    model_id = create_document("vehiclemodel", {"make_id": make_id, "name": "Golf", "view_count": 0})
    trim_id = create_document("vehicletrim", {"model_id": model_id, "name": "1.5 TSI"})
    year_id = create_document("vehicleyear", {"trim_id": trim_id, "year": 2021})
    return {"make_id": make_id, "model_id": model_id, "trim_id": trim_id, "year_id": year_id}


def test_duplicate_make_name_rejected(client, admin_headers):
    assert client.post("/api/vehicle-makes", json={"name": "Audi"}, headers=admin_headers).status_code == 201
    r = client.post("/api/vehicle-makes", json={"name": "audi"}, headers=admin_headers)
    assert r.status_code == 400


def test_delete_make_with_models_conflicts(client, admin_headers, golf):
    r = client.delete(f"/api/vehicle-makes/{golf['make_id']}", headers=admin_headers)
    assert r.status_code == 409


def test_years_are_unique_and_descending(client, admin_headers, golf):
    second_trim = create_document("vehicletrim", {"model_id": golf["model_id"], "name": "GTI"})
    create_document("vehicleyear", {"trim_id": second_trim, "year": 2021})
    create_document("vehicleyear", {"trim_id": second_trim, "year": 2023})

    r = client.get("/api/vehicle-years", params={"model_id": golf["model_id"]})
    assert [y["year"] for y in r.json()] == [2023, 2021]

    dup = client.post("/api/vehicle-years", json={"trim_id": golf["trim_id"], "year": 2021}, headers=admin_headers)
    assert dup.status_code == 400


def test_fitment_duplicate_conflicts(client, admin_headers, golf):
    product_id = make_product()
    payload = {"product_id": product_id, "vehicle_year_id": golf["year_id"]}
    assert client.post("/api/vehicle-fitments", json=payload, headers=admin_headers).status_code == 201
    assert client.post("/api/vehicle-fitments", json=payload, headers=admin_headers).status_code == 409


def test_tire_finder_by_vehicle(client, mongo, golf):
    fits = make_product(name="Fits")
    make_product(name="Does not fit")
    create_document("vehiclefitment", {"product_id": fits, "vehicle_year_id": golf["year_id"], "is_oem": True})

    r = client.get("/api/tire-finder", params={"make_id": golf["make_id"], "model_id": golf["model_id"], "year": 2021})
    body = r.json()
    assert [p["name"] for p in body["products"]] == ["Fits"]
    assert body["total"] == 1
    assert body["vehicle_info"] == "Volkswagen Golf 2021"
    model = mongo["vehiclemodel"].find_one({"name": "Golf"})
    assert model["view_count"] == 1


def test_tire_finder_unknown_vehicle(client, golf):
    r = client.get("/api/tire-finder", params={"make_id": golf["make_id"], "model_id": golf["model_id"], "year": 1999})
    assert r.status_code == 200
    assert r.json()["products"] == []
    assert r.json()["message"] == "No vehicle found with these specifications"

    r = client.get("/api/tire-finder", params={"make_id": golf["make_id"], "model_id": "bogus", "year": 2021})
    assert r.json()["total"] == 0


def test_tire_finder_by_size(client):
    make_product(name="Match", width=205, aspect_ratio=55, rim_diameter=16)
    make_product(name="Other", width=225, aspect_ratio=45, rim_diameter=17)
    r = client.get("/api/tire-finder", params={"width": 205, "aspect_ratio": 55, "rim_diameter": 16})
    body = r.json()
    assert body["tire_size"] == "205/55R16"
    assert [p["name"] for p in body["products"]] == ["Match"]


def test_tire_finder_requires_parameters(client):
    r = client.get("/api/tire-finder", params={"width": 205})
    assert r.status_code == 400
    assert r.json() == {"error": "Invalid search parameters provided"}
