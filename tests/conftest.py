import itertools
from pathlib import Path

import pytest
from werkzeug.security import generate_password_hash

from bookvault import Book, Order, OrderItem, Role, User, create_app, db


PDF_BYTES = b"%PDF-1.4\n1 0 obj << /Type /Catalog >> endobj\n%%EOF\n"


@pytest.fixture
def app(tmp_path):
    """App bound to an in-memory database and a throwaway storage root."""
    app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
            "SECRET_KEY": "test-secret",
            "SESSION_COOKIE_SECURE": False,
            "PRIVATE_STORAGE_ROOT": str(tmp_path / "storage"),
        }
    )

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def runner(app):
    return app.test_cli_runner()


@pytest.fixture
def guard(app):
    return app.extensions["bookvault"]


@pytest.fixture
def make_user(app):
    counter = itertools.count(1)

    def _make_user(email=None, role=Role.USER, password="password"):
        user = User(
            email=email or f"reader{next(counter)}@example.com",
            password_hash=generate_password_hash(password),
            role=role.value if isinstance(role, Role) else role,
        )
        db.session.add(user)
        db.session.commit()
        return user

    return _make_user


@pytest.fixture
def make_book(app):
    storage_root = Path(app.config["PRIVATE_STORAGE_ROOT"])

    def _make_book(title="Cien años", file_key="books/cien-anos.pdf", content=PDF_BYTES):
        if file_key:
            target = storage_root / file_key
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
        book = Book(title=title, author="Anon", book_file=file_key)
        db.session.add(book)
        db.session.commit()
        return book

    return _make_book


@pytest.fixture
def grant(app):
    def _grant(user, book):
        order = Order(user_id=user.id, status="PAID", total_cents=1500)
        db.session.add(order)
        db.session.flush()
        db.session.add(OrderItem(order_id=order.id, book_id=book.id, price_cents=1500))
        db.session.commit()
        return order

    return _grant


@pytest.fixture
def auth_headers(guard):
    def _auth_headers(user, device_id=None, evict=False):
        headers = {"Authorization": f"Bearer {guard.resolver.issue(user)}"}
        if device_id:
            headers["X-Device-Id"] = device_id
        if evict:
            headers["X-Evict-Oldest"] = "1"
        return headers

    return _auth_headers
