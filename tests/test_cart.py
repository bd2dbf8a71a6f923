import pytest
from pymongo.errors import DuplicateKeyError

import cart as carts
from database import ensure_indexes
from errors import NotFoundError, ValidationError


@pytest.fixture()
def uid(user):
    return str(user["_id"])


class _RacingCarts:
    """Cart collection whose upsert collides with a concurrent insert of the same user."""

    def __init__(self, collection):
        self.collection = collection

    def find_one_and_update(self, *args, **kwargs):
        raise DuplicateKeyError("E11000 duplicate key error collection: cart index: user_id_1")

    def find_one(self, *args, **kwargs):
        return self.collection.find_one(*args, **kwargs)


class TestGetOrCreateCart:
    def test_creates_lazily_once(self, db, uid):
        first = carts.get_or_create_cart(db, uid)
        second = carts.get_or_create_cart(db, uid)
        assert first["_id"] == second["_id"]
        assert first["items"] == []
        assert db["cart"].count_documents({"user_id": uid}) == 1

    def test_unique_index_rejects_second_cart(self, db, uid):
        ensure_indexes(db)
        carts.get_or_create_cart(db, uid)
        with pytest.raises(DuplicateKeyError):
            db["cart"].insert_one({"user_id": uid, "items": []})

    def test_losing_a_creation_race_returns_the_winner(self, db, uid):
        winner = carts.get_or_create_cart(db, uid)
        racing_db = {"cart": _RacingCarts(db["cart"])}
        assert carts.get_or_create_cart(racing_db, uid)["_id"] == winner["_id"]
        assert db["cart"].count_documents({"user_id": uid}) == 1


class TestAddItem:
    def test_adds_new_line(self, db, uid, make_product):
        pid = make_product(stock=5)
        cart = carts.add_item(db, uid, pid, 2)
        assert len(cart["items"]) == 1
        assert cart["items"][0]["product_id"] == pid
        assert cart["items"][0]["quantity"] == 2
        assert cart["items"][0]["id"]

    def test_merges_same_product(self, db, uid, make_product):
        pid = make_product(stock=5)
        carts.add_item(db, uid, pid, 2)
        cart = carts.add_item(db, uid, pid, 3)
        assert len(cart["items"]) == 1
        assert cart["items"][0]["quantity"] == 5

    def test_rejects_merge_beyond_stock_and_leaves_cart_unmodified(self, db, uid, make_product):
        pid = make_product(stock=5)
        carts.add_item(db, uid, pid, 4)
        with pytest.raises(ValidationError, match="Insufficient stock"):
            carts.add_item(db, uid, pid, 2)
        stored = db["cart"].find_one({"user_id": uid})
        assert stored["items"][0]["quantity"] == 4

    def test_rejects_quantity_above_stock(self, db, uid, make_product):
        pid = make_product(stock=1)
        with pytest.raises(ValidationError):
            carts.add_item(db, uid, pid, 2)

    def test_unknown_product(self, db, uid):
        with pytest.raises(NotFoundError):
            carts.add_item(db, uid, "64b000000000000000000000", 1)
        with pytest.raises(NotFoundError):
            carts.add_item(db, uid, "not-an-id", 1)

    def test_rejects_non_positive_quantity(self, db, uid, make_product):
        pid = make_product()
        with pytest.raises(ValidationError):
            carts.add_item(db, uid, pid, 0)


class TestUpdateItem:
    def test_sets_quantity(self, db, uid, make_product):
        pid = make_product(stock=5)
        item_id = carts.add_item(db, uid, pid, 1)["items"][0]["id"]
        cart = carts.update_item(db, uid, item_id, 5)
        assert cart["items"][0]["quantity"] == 5

    def test_rejects_above_stock(self, db, uid, make_product):
        pid = make_product(stock=5)
        item_id = carts.add_item(db, uid, pid, 1)["items"][0]["id"]
        with pytest.raises(ValidationError):
            carts.update_item(db, uid, item_id, 6)

    def test_missing_cart_or_item(self, db, uid, make_product):
        with pytest.raises(NotFoundError):
            carts.update_item(db, uid, "nope", 1)
        carts.add_item(db, uid, make_product(), 1)
        with pytest.raises(NotFoundError, match="Item not found"):
            carts.update_item(db, uid, "nope", 1)


class TestRemoveAndClear:
    def test_remove_item(self, db, uid, make_product):
        first = make_product(name="Lamp")
        second = make_product(name="Mug")
        carts.add_item(db, uid, first, 1)
        cart = carts.add_item(db, uid, second, 1)
        cart = carts.remove_item(db, uid, cart["items"][0]["id"])
        assert [i["product_id"] for i in cart["items"]] == [second]

    def test_remove_unknown_item(self, db, uid, make_product):
        carts.add_item(db, uid, make_product(), 1)
        with pytest.raises(NotFoundError):
            carts.remove_item(db, uid, "nope")

    def test_clear_keeps_record(self, db, uid, make_product):
        carts.add_item(db, uid, make_product(), 1)
        carts.clear_cart(db, uid)
        stored = db["cart"].find_one({"user_id": uid})
        assert stored is not None
        assert stored["items"] == []

    def test_clear_without_cart(self, db, uid):
        with pytest.raises(NotFoundError):
            carts.clear_cart(db, uid)


def test_public_view_populates_products(db, uid, make_product):
    pid = make_product(name="Lamp", price=250.0, stock=3)
    cart = carts.add_item(db, uid, pid, 2)
    public = carts.cart_to_public(db, cart)
    assert "_id" not in public
    assert public["items"][0]["product"] == {
        "id": pid,
        "name": "Lamp",
        "price": 250.0,
        "stock": 3,
        "image": "https://img.example.com/Lamp.png",
    }

    db["product"].delete_many({})
    assert carts.cart_to_public(db, cart)["items"][0]["product"] is None
