import pytest

from collabflow.config import EngineConfig
from collabflow.contracts import BusinessRole
from collabflow.errors import NotFound
from collabflow.roles import RoleRegistry


def _registry() -> RoleRegistry:
    return RoleRegistry(
        roles=[
            BusinessRole(code="after_sales", name="After sales", keywords=["refund", "broken"]),
            BusinessRole(code="presales", name="Presales", keywords=["price", "discount"]),
        ],
        robot_roles={"bot-1": "presales"},
    )


def test_explicit_code_wins():
    match = _registry().resolve("bot-1", "refund please", "after_sales")
    assert match.role.code == "after_sales"
    assert match.source == "explicit"
    assert match.matched_keywords == ["refund"]


def test_robot_binding_beats_keywords():
    match = _registry().resolve("bot-1", "my order is broken")
    assert match.role.code == "presales"
    assert match.source == "robot"


def test_best_keyword_match():
    match = _registry().resolve("bot-2", "broken item, I want a refund, what price?")
    assert match.role.code == "after_sales"
    assert match.source == "keyword"
    assert match.matched_keywords == ["refund", "broken"]


def test_default_role_when_nothing_matches():
    match = _registry().resolve(None, "hello")
    assert match.source == "default"
    assert match.role.code == "default"
    assert match.role.ai_behavior == "semi_auto"


def test_unknown_codes():
    registry = _registry()
    with pytest.raises(NotFound):
        registry.get("nope")
    with pytest.raises(NotFound):
        registry.assign("bot-9", "nope")


def test_from_config():
    config = EngineConfig(
        roles=[{"code": "vip", "name": "VIP", "ai_behavior": "full_auto"}],
        robot_roles={"bot-v": "vip"},
    )
    registry = RoleRegistry.from_config(config)
    assert registry.resolve("bot-v", "").role.ai_behavior == "full_auto"
