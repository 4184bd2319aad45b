"""Shared fixtures: in-memory SQLite with the demo coupons and a frozen clock."""

import os
from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# app.main builds its engine at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")

from app.coupon_engine.config import CouponEngineConfig
from app.coupon_engine.fixtures import DEMO_CART, demo_coupons
from app.coupon_engine.repository import CouponRepository
from app.coupon_engine.schema import create_tables
from app.coupon_engine.service import CouponService
from app.coupon_engine.time_service import TimeService

FROZEN_NOW = datetime(2026, 3, 1, 12, 0, 0)


@pytest.fixture
def engine():
    """Fresh in-memory database per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def repository(db):
    """Repository seeded with SAVE20, FIXED50, BOGO50, EXPIRED and INACTIVE."""
    repository = CouponRepository(db)
    for row in demo_coupons(FROZEN_NOW):
        repository.create(row)
    return repository


@pytest.fixture
def time_service():
    service = TimeService()
    service.freeze(FROZEN_NOW)
    return service


@pytest.fixture
def config():
    return CouponEngineConfig()


@pytest.fixture
def service(repository, config, time_service):
    return CouponService(repository, config, time_service)


@pytest.fixture
def demo_cart():
    """Subtotal 650: 2 x 250 (sale) + 1 x 150."""
    return [dict(item) for item in DEMO_CART]


@pytest.fixture
def cart_500():
    return [{"sku": "SHOE-1", "quantity": 1, "price": 500, "color": "black", "size": "42"}]


@pytest.fixture
def cart_150():
    return [{"sku": "TEE-1", "quantity": 1, "price": 150, "color": "red", "size": "M"}]
