# Shared fixtures: catalog builders and request factories
from __future__ import annotations

from typing import Any, Callable, Dict, List

import pytest

from fest.schemas.fertilizer import Product, ProductContent
from fest.schemas.solve import SolveRequest
from test_scripts.solver_fakes import DirectPool


def product(pid: str, price: float, *, active: bool = True, optimizable: bool = True, **pct: float) -> Product:
    return Product(
        id=pid,
        name=pid.replace("_", " "),
        price_per_kg=price,
        nutrients=ProductContent(**pct),
        active=active,
        optimizable=optimizable,
    )


@pytest.fixture
def make_product() -> Callable[..., Product]:
    return product


@pytest.fixture
def n_catalog() -> List[Product]:
    """Straight nitrogen products, cheapest per kg N first."""
    return [
        product("AN_34", 5.10, N=34.4),
        product("CAN_27", 4.25, N=27),
        product("AS_21", 3.50, N=21, S=24),
    ]


@pytest.fixture
def npk_catalog() -> List[Product]:
    return [
        product("CAN_27", 4.25, N=27),
        product("AN_34", 5.10, N=34.4),
        product("NPK_21_3_10", 5.80, N=21, P=3, K=10, S=4),
        product("PK_11_21", 6.00, P=11, K=21),
        product("NS_27_4", 4.60, N=27, S=3.7),
        product("K_SO4", 7.20, K=41.5, S=18),
    ]


@pytest.fixture
def make_request() -> Callable[..., SolveRequest]:
    def _make(catalog: List[Product], **overrides: Any) -> SolveRequest:
        payload: Dict[str, Any] = {
            "target": {"N": 150},
            "must_flags": {"must_n": True},
            "max_products": 2,
            "catalog": catalog,
        }
        payload.update(overrides)
        return SolveRequest(**payload)

    return _make


@pytest.fixture
def direct_pool() -> DirectPool:
    return DirectPool()
