"""Unit tests for NOWPayments webhook reconciliation."""

import hashlib
import hmac
import json
from typing import Any, Dict, Tuple
from unittest.mock import AsyncMock, patch

import pytest

from conftest import ALLOWED_WEBHOOK_IP, TEST_IPN_SECRET
from services.payment_reconciliation import (
    SIGNATURE_HEADER,
    extract_client_ip,
    map_provider_status,
    parse_order_reference,
    verify_signature,
)
from utils.errors import EventNotFound, MalformedReference, ProviderError, ProvisioningConflict


def signed_ipn(reference: str, status: str, secret: str = TEST_IPN_SECRET, **extra: Any) -> Tuple[bytes, Dict[str, str]]:
    """Body and headers of an IPN delivery, signed the way NOWPayments signs them."""
    payload = {
        "payment_id": 5077125051,
        "invoice_id": 4522625843,
        "payment_status": status,
        "order_id": reference,
        "price_amount": 10,
        "price_currency": "usd",
        "pay_currency": "usdttrc20",
        **extra,
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    signature = hmac.new(secret.encode(), canonical.encode(), hashlib.sha512).hexdigest()
    return json.dumps(payload).encode(), {SIGNATURE_HEADER: signature}


class TestStatusMapping:
    """Provider status vocabulary."""

    @pytest.mark.parametrize(
        "provider_status,payment_status,order_status,is_final",
        [
            ("waiting", "pending", "pending", False),
            ("confirming", "pending", "pending", False),
            ("confirmed", "processing", "pending", False),
            ("sending", "processing", "pending", False),
            ("finished", "paid", "active", True),
            ("partially_paid", "paid", "active", True),
            ("failed", "failed", "failed", True),
            ("expired", "failed", "failed", True),
            ("cancelled", "cancelled", "cancelled", True),
            ("refunded", "refunded", "cancelled", True),
            ("FINISHED", "paid", "active", True),
            ("something_new", "pending", "pending", False),
            (None, "pending", "pending", False),
        ],
    )
    def test_map_provider_status(self, provider_status, payment_status, order_status, is_final) -> None:
        mapping = map_provider_status(provider_status)

        assert mapping.payment_status == payment_status
        assert mapping.order_status == order_status
        assert mapping.is_final is is_final


class TestReferenceParsing:
    def test_user_id_may_contain_dashes(self) -> None:
        reference = parse_order_reference("payment-1700000000000-user-with-dashes")

        assert reference.timestamp == 1700000000000
        assert reference.user_id == "user-with-dashes"

    @pytest.mark.parametrize(
        "raw",
        [None, "", "order-1700000000000-user", "payment-abc-user", "payment-1700000000000", "payment-1700000000000-"],
    )
    def test_malformed_references(self, raw) -> None:
        with pytest.raises(MalformedReference):
            parse_order_reference(raw)


class TestSignature:
    def test_valid_signature(self) -> None:
        body, headers = signed_ipn("payment-1-user", "finished")

        assert verify_signature(body, headers[SIGNATURE_HEADER], TEST_IPN_SECRET) is True

    def test_key_order_does_not_matter(self) -> None:
        body, headers = signed_ipn("payment-1-user", "finished")
        reordered = json.dumps(dict(reversed(list(json.loads(body).items())))).encode()

        assert verify_signature(reordered, headers[SIGNATURE_HEADER], TEST_IPN_SECRET) is True

    def test_tampered_body_fails(self) -> None:
        body, headers = signed_ipn("payment-1-user", "finished")
        tampered = body.replace(b'"price_amount": 10', b'"price_amount": 1000')

        assert verify_signature(tampered, headers[SIGNATURE_HEADER], TEST_IPN_SECRET) is False

    def test_small_crypto_amount_signed_over_raw_body(self) -> None:
        body = b'{"order_id":"payment-1-u","pay_amount":0.00004521,"payment_status":"finished"}'
        signature = hmac.new(TEST_IPN_SECRET.encode(), body, hashlib.sha512).hexdigest()

        assert verify_signature(body, signature, TEST_IPN_SECRET) is True

    def test_small_crypto_amount_in_relayed_key_order(self) -> None:
        signed_text = b'{"order_id":"payment-1-u","pay_amount":0.00004521,"payment_status":"finished"}'
        relayed = b'{"payment_status": "finished", "pay_amount": 0.00004521, "order_id": "payment-1-u"}'
        signature = hmac.new(TEST_IPN_SECRET.encode(), signed_text, hashlib.sha512).hexdigest()

        assert verify_signature(relayed, signature, TEST_IPN_SECRET) is True
        tampered = relayed.replace(b"0.00004521", b"0.00004522")
        assert verify_signature(tampered, signature, TEST_IPN_SECRET) is False

    def test_missing_signature_or_secret(self) -> None:
        body, headers = signed_ipn("payment-1-user", "finished")

        assert verify_signature(body, None, TEST_IPN_SECRET) is False
        assert verify_signature(body, headers[SIGNATURE_HEADER], "") is False


class TestClientIp:
    def test_first_forwarded_address_wins(self) -> None:
        assert extract_client_ip({"x-forwarded-for": "51.75.77.69, 10.0.0.1"}, "127.0.0.1") == "51.75.77.69"

    def test_real_ip_header(self) -> None:
        assert extract_client_ip({"x-real-ip": " 51.75.77.69 "}) == "51.75.77.69"

    def test_falls_back_to_socket_address(self) -> None:
        assert extract_client_ip({}, "127.0.0.1") == "127.0.0.1"


class TestPaymentReconciler:
    """Test cases for PaymentReconciler.handle_webhook and replay."""

    @pytest.fixture
    def reconciler(self, services):
        return services.reconciler

    async def _paid_order_setup(self, services, seed_connections, create_order):
        await services.quota_manager.set_available(3)
        await seed_connections("c-1")
        return await create_order(user_id="user-1")

    @pytest.mark.asyncio
    async def test_invalid_json(self, reconciler) -> None:
        ack = await reconciler.handle_webhook(b"not json", {}, ALLOWED_WEBHOOK_IP)

        assert ack.status == "error"
        assert ack.message == "Invalid JSON payload"

    @pytest.mark.asyncio
    async def test_unlisted_ip_is_logged_and_rejected(
        self, reconciler, services, seed_connections, create_order, mock_device_client
    ) -> None:
        order = await self._paid_order_setup(services, seed_connections, create_order)
        body, headers = signed_ipn(order.reference, "finished")

        ack = await reconciler.handle_webhook(body, headers, "10.0.0.1")

        assert ack.status == "error"
        assert ack.message == "Source not allowed"
        [event] = await services.payment_store.recent_events(1)
        assert event.ip_allowed is False
        assert event.client_ip == "10.0.0.1"
        assert event.processing_error == "source ip not allowed"
        assert (await services.order_store.require(order.id)).status == "pending"
        mock_device_client.grant_proxy_access.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_ip_check_can_be_skipped(
        self, reconciler, services, seed_connections, create_order, mock_config
    ) -> None:
        order = await self._paid_order_setup(services, seed_connections, create_order)
        mock_config.skip_webhook_ip_check = True
        body, headers = signed_ipn(order.reference, "finished")

        ack = await reconciler.handle_webhook(body, headers, "10.0.0.1")

        assert ack.status == "success"

    @pytest.mark.asyncio
    async def test_finished_twice_activates_once(
        self, reconciler, services, seed_connections, create_order, mock_device_client
    ) -> None:
        order = await self._paid_order_setup(services, seed_connections, create_order)
        body, headers = signed_ipn(order.reference, "finished")

        first = await reconciler.handle_webhook(body, headers, ALLOWED_WEBHOOK_IP)
        second = await reconciler.handle_webhook(body, headers, ALLOWED_WEBHOOK_IP)

        assert first.model_dump() == {"status": "success", "message": "order active"}
        assert second.message == "order already active"
        assert mock_device_client.grant_proxy_access.await_count == 2
        assert await services.quota_manager.get_available() == 2

        payment = await services.payment_store.get_by_reference(order.reference)
        assert payment.status == "paid"
        assert payment.is_final is True
        assert payment.order_id == order.id
        assert payment.user_id == "user-1"
        assert payment.txid == "5077125051"
        assert payment.signature_ok is True
        assert payment.paid_at is not None

    @pytest.mark.asyncio
    async def test_bad_signature_is_advisory_by_default(
        self, reconciler, services, seed_connections, create_order
    ) -> None:
        order = await self._paid_order_setup(services, seed_connections, create_order)
        body, headers = signed_ipn(order.reference, "finished", secret="wrong-secret")

        ack = await reconciler.handle_webhook(body, headers, ALLOWED_WEBHOOK_IP)

        assert ack.status == "success"
        assert (await services.order_store.require(order.id)).status == "active"
        payment = await services.payment_store.get_by_reference(order.reference)
        assert payment.signature_ok is False

    @pytest.mark.asyncio
    async def test_bad_signature_rejected_when_strict(
        self, reconciler, services, seed_connections, create_order, mock_config
    ) -> None:
        order = await self._paid_order_setup(services, seed_connections, create_order)
        mock_config.reject_on_bad_signature = True
        body, headers = signed_ipn(order.reference, "finished", secret="wrong-secret")

        ack = await reconciler.handle_webhook(body, headers, ALLOWED_WEBHOOK_IP)

        assert ack.status == "error"
        assert ack.message == "Invalid signature"
        assert (await services.order_store.require(order.id)).status == "pending"
        assert await services.payment_store.get_by_reference(order.reference) is None

    @pytest.mark.asyncio
    async def test_non_final_status_only_records_payment(
        self, reconciler, services, seed_connections, create_order
    ) -> None:
        order = await self._paid_order_setup(services, seed_connections, create_order)
        body, headers = signed_ipn(order.reference, "confirming")

        ack = await reconciler.handle_webhook(body, headers, ALLOWED_WEBHOOK_IP)

        assert ack.message == "payment pending"
        payment = await services.payment_store.get_by_reference(order.reference)
        assert payment.is_final is False
        assert (await services.order_store.require(order.id)).status == "pending"

    @pytest.mark.asyncio
    async def test_late_events_do_not_undo_final_payment(
        self, reconciler, services, seed_connections, create_order
    ) -> None:
        order = await self._paid_order_setup(services, seed_connections, create_order)
        for status in ("finished", "waiting", "failed"):
            body, headers = signed_ipn(order.reference, status)
            ack = await reconciler.handle_webhook(body, headers, ALLOWED_WEBHOOK_IP)

        assert ack.message == "payment already paid"
        assert (await services.payment_store.get_by_reference(order.reference)).status == "paid"
        assert (await services.order_store.require(order.id)).status == "active"

    @pytest.mark.asyncio
    async def test_finished_after_failure_is_ignored(
        self, reconciler, services, seed_connections, create_order, mock_device_client
    ) -> None:
        order = await self._paid_order_setup(services, seed_connections, create_order)
        for status in ("expired", "finished"):
            body, headers = signed_ipn(order.reference, status)
            ack = await reconciler.handle_webhook(body, headers, ALLOWED_WEBHOOK_IP)

        assert ack.message == "payment already failed"
        assert (await services.order_store.require(order.id)).status == "failed"
        mock_device_client.grant_proxy_access.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_payment_releases_hold(
        self, reconciler, services, seed_connections, create_order
    ) -> None:
        order = await self._paid_order_setup(services, seed_connections, create_order)
        assert await services.quota_manager.get_available() == 2
        body, headers = signed_ipn(order.reference, "failed")

        ack = await reconciler.handle_webhook(body, headers, ALLOWED_WEBHOOK_IP)

        assert ack.message == "order failed"
        assert (await services.order_store.require(order.id)).status == "failed"
        assert await services.quota_manager.get_available() == 3

    @pytest.mark.asyncio
    async def test_refund_cancels_pending_order(
        self, reconciler, services, seed_connections, create_order
    ) -> None:
        order = await self._paid_order_setup(services, seed_connections, create_order)
        body, headers = signed_ipn(order.reference, "refunded")

        ack = await reconciler.handle_webhook(body, headers, ALLOWED_WEBHOOK_IP)

        assert ack.message == "order cancelled"
        assert (await services.payment_store.get_by_reference(order.reference)).status == "refunded"

    @pytest.mark.asyncio
    async def test_payment_without_order_is_recorded(self, reconciler, services) -> None:
        body, headers = signed_ipn("payment-1700000000000-ghost", "finished")

        ack = await reconciler.handle_webhook(body, headers, ALLOWED_WEBHOOK_IP)

        assert ack.model_dump() == {"status": "success", "message": "payment recorded without order"}
        payment = await services.payment_store.get_by_reference("payment-1700000000000-ghost")
        assert payment.order_id is None
        assert payment.user_id == "ghost"

    @pytest.mark.asyncio
    async def test_malformed_reference_marks_event_failed(self, reconciler, services) -> None:
        body, headers = signed_ipn("not-a-reference", "finished")

        ack = await reconciler.handle_webhook(body, headers, ALLOWED_WEBHOOK_IP)

        assert ack.status == "error"
        [event] = await services.payment_store.recent_events(1)
        assert event.retry_count == 1
        assert "not-a-reference" in event.processing_error
        assert event.processed_at is None

    @pytest.mark.asyncio
    async def test_activation_in_progress_is_acknowledged(
        self, reconciler, services, seed_connections, create_order
    ) -> None:
        order = await self._paid_order_setup(services, seed_connections, create_order)
        body, headers = signed_ipn(order.reference, "finished")

        with patch.object(
            services.activation, "activate_paid_order", AsyncMock(side_effect=ProvisioningConflict("busy"))
        ):
            ack = await reconciler.handle_webhook(body, headers, ALLOWED_WEBHOOK_IP)

        assert ack.model_dump() == {"status": "success", "message": "activation already in progress"}

    @pytest.mark.asyncio
    async def test_replay_after_provider_outage(
        self, reconciler, services, seed_connections, create_order, mock_device_client
    ) -> None:
        order = await self._paid_order_setup(services, seed_connections, create_order)
        grant = mock_device_client.grant_proxy_access.side_effect
        mock_device_client.grant_proxy_access.side_effect = ProviderError("device api down", provider="device_api")
        body, headers = signed_ipn(order.reference, "finished")

        failed = await reconciler.handle_webhook(body, headers, ALLOWED_WEBHOOK_IP)

        assert failed.model_dump() == {"status": "error", "message": "device api down"}
        [event] = await services.payment_store.recent_events(1)
        assert event.retry_count == 1
        assert (await services.order_store.require(order.id)).status == "pending"

        mock_device_client.grant_proxy_access.side_effect = grant
        replayed = await reconciler.replay_event(event.id)

        assert replayed.message == "order active"
        stored_event = await services.payment_store.get_event(event.id)
        assert stored_event.processed_at is not None
        assert stored_event.processing_error is None

    @pytest.mark.asyncio
    async def test_replay_unknown_event(self, reconciler) -> None:
        with pytest.raises(EventNotFound):
            await reconciler.replay_event("missing")
