from datetime import timedelta

import pytest
from bson.objectid import ObjectId

from database import now
from factories import add_address, add_order, add_product, stock_of


def test_root_and_health_without_database(client, monkeypatch):
    from config import settings

    monkeypatch.setattr(settings, "database_url", None)
    assert client.get("/").json() == {"message": "Storefront API running"}
    health = client.get("/health").json()
    assert health["backend"] == "running"
    assert health["database"] == "not configured"


class TestCatalog:
    def test_admin_manages_categories(self, client, store, admin):
        created = client.post("/categories", json={"name": "Shirts"}, headers=admin[1])
        assert created.status_code == 201
        category_id = created.json()["id"]
        add_product(store, category_id=category_id)

        listed = client.get("/categories").json()
        assert listed[0]["name"] == "Shirts"
        assert listed[0]["product_count"] == 1

        renamed = client.put(f"/categories/{category_id}", json={"name": "Tops"}, headers=admin[1])
        assert renamed.json()["name"] == "Tops"

        blocked = client.delete(f"/categories/{category_id}", headers=admin[1])
        assert blocked.status_code == 400

    def test_customer_cannot_write_catalog(self, client, customer):
        assert client.post("/categories", json={"name": "Shirts"}, headers=customer[1]).status_code == 403
        resp = client.post("/products", json={"name": "Linen Shirt", "price": 25.0, "stock": 3}, headers=customer[1])
        assert resp.status_code == 403
        assert client.post("/products", json={"name": "Linen Shirt", "price": 25.0, "stock": 3}).status_code == 403

    def test_product_crud(self, client, admin):
        created = client.post("/products", json={"name": "Linen Shirt", "price": 25.0, "stock": 3}, headers=admin[1])
        assert created.status_code == 201
        product_id = created.json()["id"]

        assert client.get(f"/products/{product_id}").json()["stock"] == 3
        updated = client.put(f"/products/{product_id}", json={"stock": 7}, headers=admin[1])
        assert updated.json()["stock"] == 7
        assert updated.json()["price"] == 25.0

        assert client.delete(f"/products/{product_id}", headers=admin[1]).status_code == 200
        assert client.get(f"/products/{product_id}").status_code == 404

    def test_negative_stock_is_rejected(self, client, admin):
        resp = client.post("/products", json={"name": "Linen Shirt", "price": 25.0, "stock": -1}, headers=admin[1])
        assert resp.status_code == 400
        assert resp.json()["code"] == "VALIDATION_ERROR"

    def test_unknown_category_is_rejected(self, client, admin):
        resp = client.post(
            "/products",
            json={"name": "Linen Shirt", "price": 25.0, "stock": 1, "category_id": str(ObjectId())},
            headers=admin[1],
        )
        assert resp.status_code == 400
        assert resp.json()["message"] == "Invalid category"

    def test_malformed_product_id_is_404(self, client):
        assert client.get("/products/not-an-id").status_code == 404

    def test_filters_and_search(self, client, store):
        add_product(store, "Linen Shirt", featured=True)
        add_product(store, "Canvas Tote", description="Sturdy shirt-pocket tote")
        add_product(store, "Wool Scarf")

        featured = client.get("/products", params={"featured": True}).json()
        assert [p["name"] for p in featured] == ["Linen Shirt"]

        found = client.get("/search", params={"q": "SHIRT"}).json()
        assert sorted(p["name"] for p in found) == ["Canvas Tote", "Linen Shirt"]
        assert client.get("/search", params={"q": "  "}).json() == []


class TestCart:
    def test_add_merges_quantities(self, client, store, customer):
        p = add_product(store, "Linen Shirt", 25.0, stock=9, images=["https://cdn.example/shirt.jpg"])

        client.post("/cart", json={"product_id": p, "quantity": 1}, headers=customer[1])
        cart = client.post("/cart", json={"product_id": p, "quantity": 2}, headers=customer[1]).json()

        assert cart["total"] == 75.0
        assert cart["items"][0]["quantity"] == 3
        assert cart["items"][0]["image_url"] == "https://cdn.example/shirt.jpg"

    def test_set_and_remove(self, client, store, customer):
        p = add_product(store, price=10.0)
        client.post("/cart", json={"product_id": p, "quantity": 1}, headers=customer[1])

        assert client.put("/cart", json={"product_id": p, "quantity": 4}, headers=customer[1]).json()["total"] == 40.0
        assert client.delete(f"/cart/{p}", headers=customer[1]).status_code == 200
        assert client.delete(f"/cart/{p}", headers=customer[1]).status_code == 404
        assert client.get("/cart", headers=customer[1]).json()["items"] == []

    def test_unknown_product(self, client, customer):
        resp = client.post("/cart", json={"product_id": str(ObjectId()), "quantity": 1}, headers=customer[1])
        assert resp.status_code == 404
        assert resp.json()["message"] == "Product not found."

    def test_zero_quantity_is_rejected(self, client, store, customer):
        resp = client.post("/cart", json={"product_id": add_product(store), "quantity": 0}, headers=customer[1])
        assert resp.status_code == 400

    def test_anonymous_cart_is_401(self, client):
        assert client.get("/cart").status_code == 401


class TestWishlist:
    def test_add_is_idempotent(self, client, store, customer):
        p = add_product(store)
        client.post("/wishlist", json={"product_id": p}, headers=customer[1])
        client.post("/wishlist", json={"product_id": p}, headers=customer[1])

        items = client.get("/wishlist", headers=customer[1]).json()["items"]

        assert [i["id"] for i in items] == [p]

    def test_remove(self, client, store, customer):
        p = add_product(store)
        client.post("/wishlist", json={"product_id": p}, headers=customer[1])

        assert client.delete(f"/wishlist/{p}", headers=customer[1]).status_code == 200
        assert client.delete(f"/wishlist/{p}", headers=customer[1]).status_code == 404


class TestAddresses:
    def test_create_and_list(self, client, customer):
        created = client.post("/addresses", json={
            "full_name": "Cora Mills", "phone": "5550100", "line1": "12 Harbour Rd",
            "city": "Pune", "state": "MH", "postal_code": "411001",
        }, headers=customer[1])

        assert created.status_code == 201
        assert created.json()["country"] == "IN"
        assert [a["id"] for a in client.get("/addresses", headers=customer[1]).json()] == [created.json()["id"]]

    def test_cannot_delete_someone_elses_address(self, client, store, customer, other_customer):
        address_id = add_address(store, customer[0].user_id)

        assert client.delete(f"/addresses/{address_id}", headers=other_customer[1]).status_code == 404
        assert client.delete(f"/addresses/{address_id}", headers=customer[1]).status_code == 200


class TestProductUpdateNulls:
    @pytest.mark.parametrize("field", ["stock", "price", "name", "featured", "images"])
    def test_null_is_rejected(self, client, store, admin, field):
        p = add_product(store, price=25.0, stock=4)

        resp = client.put(f"/products/{p}", json={field: None}, headers=admin[1])

        assert resp.status_code == 400
        assert resp.json()["code"] == "VALIDATION_ERROR"
        stored = store.find_one("product", {"_id": p})
        assert stored["stock"] == 4
        assert stored["price"] == 25.0

    def test_description_can_be_cleared(self, client, store, admin):
        p = add_product(store, description="Soft linen")

        resp = client.put(f"/products/{p}", json={"description": None}, headers=admin[1])

        assert resp.status_code == 200
        assert resp.json()["description"] is None

    def test_cancel_still_restocks_after_rejected_update(self, client, store, customer, admin):
        p = add_product(store, stock=4)
        order_id = add_order(store, customer[0].user_id, [(p, 2)])
        client.put(f"/products/{p}", json={"stock": None}, headers=admin[1])

        resp = client.put(f"/orders/{order_id}/cancel", headers=customer[1])

        assert resp.status_code == 200
        assert stock_of(store, p) == 6

    def test_category_name_cannot_be_nulled(self, client, admin):
        category_id = client.post("/categories", json={"name": "Shirts"}, headers=admin[1]).json()["id"]
        assert client.put(f"/categories/{category_id}", json={"name": None}, headers=admin[1]).status_code == 400


class TestBanners:
    def add_banner(self, client, admin, **fields):
        body = {"title": "Monsoon Sale", **fields}
        resp = client.post("/banners", json=body, headers=admin[1])
        assert resp.status_code == 201
        return resp.json()["id"]

    def test_public_list_shows_active_banners_in_window(self, client, admin):
        current = now()
        top = self.add_banner(client, admin, title="Top Deal", active=True, priority=5)
        running = self.add_banner(
            client, admin, active=True,
            starts_at=(current - timedelta(days=1)).isoformat(), ends_at=(current + timedelta(days=1)).isoformat(),
        )
        self.add_banner(client, admin, title="Expired", active=True, ends_at=(current - timedelta(days=1)).isoformat())
        self.add_banner(client, admin, title="Upcoming", active=True, starts_at=(current + timedelta(days=1)).isoformat())
        self.add_banner(client, admin, title="Draft")

        public = client.get("/banners").json()

        assert [b["id"] for b in public] == [top, running]
        assert len(client.get("/admin/banners", headers=admin[1]).json()) == 5

    def test_naive_window_is_read_as_utc(self, client, admin):
        self.add_banner(client, admin, active=True, starts_at="2000-01-01T00:00:00")
        assert len(client.get("/banners").json()) == 1

    def test_update_and_delete(self, client, admin):
        banner_id = self.add_banner(client, admin)

        updated = client.put(f"/banners/{banner_id}", json={"active": True, "priority": 3}, headers=admin[1])
        assert updated.json()["active"] is True
        assert updated.json()["priority"] == 3
        assert client.put(f"/banners/{banner_id}", json={"title": None}, headers=admin[1]).status_code == 400

        assert client.delete(f"/banners/{banner_id}", headers=admin[1]).status_code == 200
        missing = client.delete(f"/banners/{banner_id}", headers=admin[1])
        assert missing.status_code == 404
        assert missing.json()["message"] == "Banner not found."

    def test_invalid_color_is_rejected(self, client, admin):
        resp = client.post("/banners", json={"title": "Monsoon Sale", "text_color": "red"}, headers=admin[1])
        assert resp.status_code == 400

    def test_customer_cannot_manage_banners(self, client, customer):
        assert client.post("/banners", json={"title": "Monsoon Sale"}, headers=customer[1]).status_code == 403
        assert client.get("/admin/banners", headers=customer[1]).status_code == 403


class TestAdminSearch:
    def test_products_by_text_and_filters(self, client, store, admin):
        shirt = add_product(store, "Linen Shirt", 25.0, stock=3)
        add_product(store, "Silk Shirt", 80.0, stock=0)
        add_product(store, "Canvas Tote", 12.5, stock=9)

        def names(**params):
            resp = client.get("/admin/search/products", params=params, headers=admin[1])
            return sorted(p["name"] for p in resp.json())

        assert names(q="shirt") == ["Linen Shirt", "Silk Shirt"]
        assert names(q="shirt", in_stock=True) == ["Linen Shirt"]
        assert names(in_stock=False) == ["Silk Shirt"]
        assert names(min_price=20, max_price=50) == ["Linen Shirt"]
        assert names(max_price=25) == ["Canvas Tote", "Linen Shirt"]
        assert len(names()) == 3
        detail = client.get(f"/products/{shirt}").json()
        assert detail["average_rating"] is None
        assert detail["review_count"] == 0

    def test_users_by_text_and_role(self, client, store, customer, other_customer, admin, courier):
        add_order(store, customer[0].user_id, [(add_product(store), 1)])

        found = client.get("/admin/search/users", params={"q": "CORA"}, headers=admin[1]).json()
        assert [u["email"] for u in found] == ["cora@mail.com"]
        assert found[0]["order_count"] == 1
        assert "password_hash" not in found[0]

        couriers = client.get("/admin/search/users", params={"role": "DELIVERY"}, headers=admin[1]).json()
        assert [u["email"] for u in couriers] == ["ravi@mail.com"]

    def test_search_is_admin_only(self, client, customer):
        for kind in ("orders", "users", "products"):
            assert client.get(f"/admin/search/{kind}", headers=customer[1]).status_code == 403
