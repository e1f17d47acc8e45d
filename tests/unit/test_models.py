"""Unit tests for fulfillment models and the error taxonomy."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from models import (
    CheckoutRequest,
    ManualProvisioningMetadata,
    Order,
    ProvisionedMetadata,
    ProxyGrant,
    ProxyProtocol,
    ProxyRecord,
    ProxyView,
    RotationConfig,
    SelectedConnection,
)
from utils.errors import AlreadyFinal, InsufficientQuota, OrderNotFound

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestRotationConfig:
    """Test cases for RotationConfig."""

    @pytest.mark.parametrize(
        "enabled,interval,expected",
        [(True, 30, "scheduled"), (True, 0, "none"), (False, 30, "none")],
    )
    def test_mode(self, enabled, interval, expected) -> None:
        rotation = RotationConfig(ip_change_enabled=enabled, interval_minutes=interval)

        assert rotation.mode.value == expected

    def test_negative_interval_rejected(self) -> None:
        with pytest.raises(ValidationError):
            RotationConfig(ip_change_enabled=True, interval_minutes=-5)

    def test_checkout_request_builds_rotation(self) -> None:
        request = CheckoutRequest(plan_id="plan-basic", ip_change_enabled=True, ip_change_interval_minutes=10)

        assert request.rotation == RotationConfig(ip_change_enabled=True, interval_minutes=10)


class TestOrder:
    """Test cases for the Order model."""

    def _order(self, **fields) -> Order:
        return Order(id="o-1", user_id="u-1", plan_id="plan-basic", created_at=NOW, updated_at=NOW, **fields)

    def test_defaults(self) -> None:
        order = self._order()

        assert order.status == "pending"
        assert order.metadata.kind == "pending_payment"
        assert order.is_trial is True

    def test_metadata_is_discriminated_by_kind(self) -> None:
        order = self._order(
            total_amount=Decimal("10"),
            metadata={"kind": "provisioned", "connection_id": "c-1", "proxy_ids": ["p-1", "p-2"]},
        )

        assert isinstance(order.metadata, ProvisionedMetadata)
        assert order.metadata.manual_provisioning_required is False
        assert order.is_trial is False

    def test_manual_metadata_requires_reason(self) -> None:
        with pytest.raises(ValidationError):
            self._order(metadata={"kind": "manual_provisioning"})

        order = self._order(metadata={"kind": "manual_provisioning", "pending_reason": "no connection available"})
        assert isinstance(order.metadata, ManualProvisioningMetadata)
        assert order.metadata.manual_provisioning_required is True

    def test_unknown_metadata_kind_rejected(self) -> None:
        with pytest.raises(ValidationError):
            self._order(metadata={"kind": "something_else"})

    def test_quantity_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            self._order(quantity=0)

    def test_rotation_comes_from_metadata(self) -> None:
        order = self._order(
            metadata={"kind": "trial", "rotation": {"ip_change_enabled": True, "interval_minutes": 5}}
        )

        assert order.rotation.enabled is True


class TestConnectionModels:
    @pytest.mark.parametrize(
        "connection_class,is_active,not_configured",
        [("active", True, False), ("inactive", False, False), ("unconfigured", True, True)],
    )
    def test_selected_connection_from_class(self, connection_class, is_active, not_configured) -> None:
        selected = SelectedConnection.from_class("c-1", connection_class)

        assert selected.is_active is is_active
        assert selected.not_configured is not_configured

    def test_access_string(self) -> None:
        grant = ProxyGrant(
            id="g-1",
            protocol=ProxyProtocol.SOCKS5,
            ip="203.0.113.10",
            port=1080,
            hostname="proxy.device.test",
            login="user_abc",
            password="pw",
        )

        assert grant.access_string == "203.0.113.10:1080:user_abc:pw"
        assert grant.protocol == "socks5"

    def test_proxy_view_hides_credentials(self) -> None:
        record = ProxyRecord(
            id="p-1",
            order_id="o-1",
            user_id="u-1",
            connection_id="c-1",
            grant_id="g-1",
            protocol=ProxyProtocol.HTTP,
            host="proxy.device.test",
            port=8080,
            username="user_u-1",
            encrypted_password="aa:bb:cc",
            change_url="https://device.test/actions/changeip/abc",
            created_at=NOW,
        )

        view = ProxyView.from_record(record).model_dump()

        assert view["username"] == "user_u-1"
        assert "encrypted_password" not in view
        assert "change_url" not in view
        assert "grant_id" not in view


class TestErrors:
    def test_out_of_stock_is_503(self) -> None:
        error = InsufficientQuota(available=0, requested=1)

        assert error.code == "out_of_stock"
        assert error.http_status == 503
        assert error.to_dict() == {
            "error": "out_of_stock",
            "message": "Out of stock. No connections are available right now.",
            "details": {"available": 0, "requested": 1},
        }

    def test_partial_availability_is_400(self) -> None:
        error = InsufficientQuota(available=2, requested=3)

        assert error.code == "insufficient_quota"
        assert error.http_status == 400
        assert "Only 2 connection(s) available" in error.message

    def test_already_final_is_a_conflict(self) -> None:
        error = AlreadyFinal("o-1", "confirmed")

        assert error.http_status == 409
        assert error.to_dict()["details"] == {"order_id": "o-1", "state": "confirmed"}

    def test_not_found(self) -> None:
        assert OrderNotFound("o-1").to_dict()["error"] == "order_not_found"
