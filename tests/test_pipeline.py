# tests/test_pipeline.py
"""
Unit tests for the admission pipeline.
"""
import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from nacl.signing import SigningKey

from metergate.gate.agent_auth import SignedRequest
from metergate.gate.nonce import InMemoryNonceStore
from metergate.gate.pipeline import (
    AdmissionPipeline,
    AdmissionState,
    RejectionReason,
    parse_payment_headers,
    pipeline_from_settings,
    validate_timestamp,
)
from metergate.gate.routing import quote_for
from metergate.services.collaborators import InMemoryUsageSink

from conftest import (
    AGENT_KEY_ID, MINT, PAY_TO, ROUTE_ID, TX_SIG, ata, make_transaction, public_key_b64, signed_headers,
)

NOW = 1_700_000_000.0
NOW_MS = int(NOW * 1000)


def make_request(headers, method="GET", path="/api/summarize", query=""):
    return SignedRequest(method=method, path=path, query=query, headers=headers)


def admit(pipeline, headers, **kwargs):
    return asyncio.run(pipeline.admit(make_request(headers, **kwargs)))


def headers_for(signing_key, **kwargs):
    kwargs.setdefault("timestamp_ms", NOW_MS)
    return signed_headers(signing_key, **kwargs)


@pytest.fixture
def pipeline(single_route, registry, paid_ledger):
    return AdmissionPipeline(single_route, registry, paid_ledger, clock=lambda: NOW)


class TestParsePaymentHeaders:
    """Test x-meter-* header extraction."""

    def test_complete_headers(self, signing_key):
        assertion = parse_payment_headers(make_request(headers_for(signing_key)))
        assert assertion.tx_sig == TX_SIG
        assert assertion.route_id == ROUTE_ID
        assert assertion.amount == 0.03
        assert assertion.timestamp == NOW_MS
        assert assertion.agent_key_id == AGENT_KEY_ID

    @pytest.mark.parametrize("header", [
        "x-meter-tx", "x-meter-route", "x-meter-amt", "x-meter-currency",
        "x-meter-nonce", "x-meter-ts", "x-meter-agent-kid",
    ])
    def test_missing_header(self, signing_key, header):
        headers = headers_for(signing_key)
        del headers[header]
        assert parse_payment_headers(make_request(headers)) is None

    @pytest.mark.parametrize("header,value", [
        ("x-meter-amt", "abc"),
        ("x-meter-amt", "nan"),
        ("x-meter-amt", "inf"),
        ("x-meter-ts", "yesterday"),
        ("x-meter-ts", "1.5"),
        ("x-meter-nonce", ""),
    ])
    def test_invalid_value(self, signing_key, header, value):
        headers = headers_for(signing_key)
        headers[header] = value
        assert parse_payment_headers(make_request(headers)) is None


class TestValidateTimestamp:
    """Test the inclusive admission window."""

    def test_now(self):
        assert validate_timestamp(NOW_MS, NOW_MS, 300, 60) is True

    def test_oldest_accepted(self):
        assert validate_timestamp(NOW_MS - 300_000, NOW_MS, 300, 60) is True

    def test_too_old(self):
        assert validate_timestamp(NOW_MS - 300_001, NOW_MS, 300, 60) is False

    def test_max_skew_accepted(self):
        assert validate_timestamp(NOW_MS + 60_000, NOW_MS, 300, 60) is True

    def test_too_far_ahead(self):
        assert validate_timestamp(NOW_MS + 60_001, NOW_MS, 300, 60) is False


class TestPipelineConstruction:
    def test_short_nonce_ttl_refused(self, single_route, registry, ledger):
        with pytest.raises(ValueError):
            AdmissionPipeline(
                single_route, registry, ledger,
                nonce_store=InMemoryNonceStore(ttl_seconds=100),
                max_age_seconds=300, clock_skew_seconds=60,
            )

    def test_ttl_equal_to_window_accepted(self, single_route, registry, ledger):
        pipeline = AdmissionPipeline(
            single_route, registry, ledger,
            nonce_store=InMemoryNonceStore(ttl_seconds=360),
            max_age_seconds=300, clock_skew_seconds=60,
        )
        assert pipeline.replay_window_seconds == 360

    def test_default_store_covers_window(self, single_route, registry, ledger):
        pipeline = AdmissionPipeline(
            single_route, registry, ledger, max_age_seconds=7200, clock_skew_seconds=60,
        )
        assert pipeline.nonce_store.ttl_seconds >= 7260


class TestAdmission:
    """Test the full admission sequence."""

    def test_valid_request_admitted(self, pipeline, signing_key):
        decision = admit(pipeline, headers_for(signing_key))
        assert decision.admitted is True
        assert decision.state is AdmissionState.ADMITTED
        assert decision.stage is AdmissionState.IDEMPOTENCY_OK
        assert decision.reason is None
        assert decision.assertion.tx_sig == TX_SIG
        assert decision.quote.route_id == ROUTE_ID

    @patch("metergate.gate.nonce.settings")
    def test_production_warning_for_memory_nonce_store(self, nonce_settings, pipeline, signing_key, caplog):
        nonce_settings.METER_ENVIRONMENT = "production"
        with caplog.at_level("WARNING"):
            assert admit(pipeline, headers_for(signing_key)).admitted is True
        assert "InMemoryNonceStore in production" in caplog.text

    def test_no_production_warning_in_development(self, pipeline, signing_key, caplog):
        with caplog.at_level("WARNING"):
            admit(pipeline, headers_for(signing_key))
        assert "SECURITY WARNING" not in caplog.text

    def test_signed_query_admitted(self, pipeline, signing_key):
        headers = headers_for(signing_key, path="/api/summarize?text=hello")
        assert admit(pipeline, headers, query="text=hello").admitted is True

    def test_missing_headers_quote_default_route(self, pipeline):
        decision = admit(pipeline, {})
        assert decision.admitted is False
        assert decision.reason is RejectionReason.PAYMENT_REQUIRED
        assert decision.stage is AdmissionState.START
        assert decision.quote.route_id == ROUTE_ID
        assert decision.quote.pay_to == PAY_TO

    def test_missing_headers_multi_route(self, multi_route, registry, paid_ledger):
        pipeline = AdmissionPipeline(multi_route, registry, paid_ledger, clock=lambda: NOW)
        decision = admit(pipeline, {})
        assert decision.reason is RejectionReason.PAYMENT_REQUIRED
        assert decision.quote.route_id == ROUTE_ID

    def test_unparseable_amount_is_payment_required(self, pipeline, signing_key):
        headers = headers_for(signing_key)
        headers["x-meter-amt"] = "three cents"
        assert admit(pipeline, headers).reason is RejectionReason.PAYMENT_REQUIRED

    def test_unknown_route(self, pipeline, signing_key):
        decision = admit(pipeline, headers_for(signing_key, route_id="translate:v1"))
        assert decision.reason is RejectionReason.ROUTE_NOT_FOUND
        assert decision.detail == "translate:v1"
        assert decision.quote is None

    def test_stale_timestamp(self, pipeline, signing_key):
        decision = admit(pipeline, headers_for(signing_key, timestamp_ms=NOW_MS - 301_000))
        assert decision.reason is RejectionReason.REQUEST_EXPIRED
        assert decision.stage is AdmissionState.HEADERS_PARSED
        assert decision.message == "Request expired"

    def test_future_timestamp(self, pipeline, signing_key):
        decision = admit(pipeline, headers_for(signing_key, timestamp_ms=NOW_MS + 61_000))
        assert decision.reason is RejectionReason.REQUEST_EXPIRED

    def test_expired_request_does_not_consume_nonce(self, pipeline, signing_key):
        admit(pipeline, headers_for(signing_key, timestamp_ms=NOW_MS - 301_000))
        assert admit(pipeline, headers_for(signing_key)).admitted is True

    def test_replayed_nonce(self, pipeline, signing_key):
        headers = headers_for(signing_key)
        assert admit(pipeline, headers).admitted is True

        decision = admit(pipeline, headers)
        assert decision.reason is RejectionReason.INVALID_NONCE
        assert decision.stage is AdmissionState.TIMESTAMP_OK
        assert decision.message == "Invalid or reused nonce"

    def test_bad_signature(self, pipeline):
        decision = admit(pipeline, headers_for(SigningKey.generate()))
        assert decision.reason is RejectionReason.INVALID_SIGNATURE
        assert decision.stage is AdmissionState.NONCE_OK

    def test_bad_signature_still_consumes_nonce(self, pipeline, signing_key):
        admit(pipeline, headers_for(SigningKey.generate()))
        assert admit(pipeline, headers_for(signing_key)).reason is RejectionReason.INVALID_NONCE

    def test_tampered_path(self, pipeline, signing_key):
        decision = admit(pipeline, headers_for(signing_key), path="/api/summarize/admin")
        assert decision.reason is RejectionReason.INVALID_SIGNATURE

    def test_insufficient_payment(self, single_route, registry, ledger, signing_key):
        ledger.transactions[TX_SIG] = make_transaction(ata(MINT, PAY_TO), 20000)
        pipeline = AdmissionPipeline(single_route, registry, ledger, clock=lambda: NOW)

        decision = admit(pipeline, headers_for(signing_key))
        assert decision.reason is RejectionReason.PAYMENT_VERIFICATION_FAILED
        assert decision.detail == "insufficient_amount"
        assert decision.stage is AdmissionState.SIGNATURE_OK

    def test_claimed_amount_does_not_lower_price(self, single_route, registry, ledger, signing_key):
        ledger.transactions[TX_SIG] = make_transaction(ata(MINT, PAY_TO), 10000)
        pipeline = AdmissionPipeline(single_route, registry, ledger, clock=lambda: NOW)

        decision = admit(pipeline, headers_for(signing_key, amount="0.01"))
        assert decision.detail == "insufficient_amount"

    def test_unknown_transaction(self, single_route, registry, ledger, signing_key):
        pipeline = AdmissionPipeline(single_route, registry, ledger, clock=lambda: NOW)
        decision = admit(pipeline, headers_for(signing_key))
        assert decision.reason is RejectionReason.PAYMENT_VERIFICATION_FAILED
        assert decision.detail == "transaction_not_found"

    def test_registry_fault_is_internal_error(self, single_route, paid_ledger, signing_key):
        registry = AsyncMock()
        registry.lookup.side_effect = ConnectionError("registry unreachable")
        pipeline = AdmissionPipeline(single_route, registry, paid_ledger, clock=lambda: NOW)

        decision = admit(pipeline, headers_for(signing_key))
        assert decision.reason is RejectionReason.INTERNAL_ERROR
        assert decision.stage is AdmissionState.NONCE_OK
        assert decision.message == "Internal error"
        assert "unreachable" not in decision.message

    def test_each_rejection_has_one_reason(self, pipeline, signing_key):
        decision = admit(pipeline, headers_for(signing_key, route_id="other:v1"))
        assert decision.state is AdmissionState.REJECTED
        assert isinstance(decision.reason, RejectionReason)


class TestFacilitator:
    """Test delegated verification and fallback."""

    def make_facilitator(self, verified=True, error=None):
        facilitator = MagicMock()
        facilitator.verify = AsyncMock(return_value=verified, side_effect=error)
        return facilitator

    def test_facilitator_success_skips_ledger(self, single_route, registry, ledger, signing_key):
        facilitator = self.make_facilitator(verified=True)
        pipeline = AdmissionPipeline(single_route, registry, ledger, facilitator=facilitator, clock=lambda: NOW)

        assert admit(pipeline, headers_for(signing_key)).admitted is True
        facilitator.verify.assert_awaited_once_with(TX_SIG, ROUTE_ID, 0.03, PAY_TO, MINT)

    def test_facilitator_failure_falls_back_to_ledger(self, single_route, registry, paid_ledger, signing_key):
        facilitator = self.make_facilitator(verified=False)
        pipeline = AdmissionPipeline(
            single_route, registry, paid_ledger, facilitator=facilitator, clock=lambda: NOW,
        )
        assert admit(pipeline, headers_for(signing_key)).admitted is True

    def test_facilitator_error_falls_back_to_ledger(self, single_route, registry, paid_ledger, signing_key):
        facilitator = self.make_facilitator(error=RuntimeError("boom"))
        pipeline = AdmissionPipeline(
            single_route, registry, paid_ledger, facilitator=facilitator, clock=lambda: NOW,
        )
        assert admit(pipeline, headers_for(signing_key)).admitted is True

    def test_both_fail(self, single_route, registry, ledger, signing_key):
        facilitator = self.make_facilitator(verified=False)
        pipeline = AdmissionPipeline(single_route, registry, ledger, facilitator=facilitator, clock=lambda: NOW)
        decision = admit(pipeline, headers_for(signing_key))
        assert decision.reason is RejectionReason.PAYMENT_VERIFICATION_FAILED


class TestUsageSink:
    """Test idempotency and usage recording."""

    @pytest.fixture
    def memo_free_ledger(self, ledger):
        ledger.transactions[TX_SIG] = make_transaction(ata(MINT, PAY_TO), 30000)
        return ledger

    def test_usage_recorded(self, single_route, registry, memo_free_ledger, signing_key):
        sink = InMemoryUsageSink()
        pipeline = AdmissionPipeline(single_route, registry, memo_free_ledger, usage_sink=sink, clock=lambda: NOW)

        assert admit(pipeline, headers_for(signing_key)).admitted is True
        assert [a.tx_sig for a in sink.records()] == [TX_SIG]

    def test_transaction_reuse_rejected(self, single_route, registry, memo_free_ledger, signing_key):
        sink = InMemoryUsageSink()
        pipeline = AdmissionPipeline(single_route, registry, memo_free_ledger, usage_sink=sink, clock=lambda: NOW)

        assert admit(pipeline, headers_for(signing_key, nonce="nonce-1")).admitted is True
        decision = admit(pipeline, headers_for(signing_key, nonce="nonce-2"))
        assert decision.reason is RejectionReason.TRANSACTION_ALREADY_USED
        assert decision.stage is AdmissionState.PAYMENT_OK

    def test_idempotency_check_fault(self, single_route, registry, memo_free_ledger, signing_key):
        sink = MagicMock()
        sink.is_used = AsyncMock(side_effect=ConnectionError("db down"))
        pipeline = AdmissionPipeline(single_route, registry, memo_free_ledger, usage_sink=sink, clock=lambda: NOW)

        decision = admit(pipeline, headers_for(signing_key))
        assert decision.reason is RejectionReason.IDEMPOTENCY_CHECK_FAILED

    def test_record_refused(self, single_route, registry, memo_free_ledger, signing_key):
        sink = MagicMock()
        sink.is_used = AsyncMock(return_value=False)
        sink.record = AsyncMock(return_value=False)
        pipeline = AdmissionPipeline(single_route, registry, memo_free_ledger, usage_sink=sink, clock=lambda: NOW)

        decision = admit(pipeline, headers_for(signing_key))
        assert decision.reason is RejectionReason.USAGE_NOT_RECORDED
        assert decision.stage is AdmissionState.IDEMPOTENCY_OK

    def test_record_fault(self, single_route, registry, memo_free_ledger, signing_key):
        sink = MagicMock()
        sink.is_used = AsyncMock(return_value=False)
        sink.record = AsyncMock(side_effect=RuntimeError("write failed"))
        pipeline = AdmissionPipeline(single_route, registry, memo_free_ledger, usage_sink=sink, clock=lambda: NOW)

        assert admit(pipeline, headers_for(signing_key)).reason is RejectionReason.USAGE_NOT_RECORDED


class TestPipelineFromSettings:
    @patch("metergate.gate.facilitator.settings")
    @patch("metergate.gate.nonce.settings")
    @patch("metergate.services.collaborators.settings")
    @patch("metergate.gate.routing.settings")
    def test_wires_configured_collaborators(
        self, routing_settings, registry_settings, nonce_settings, facilitator_settings, ledger, signing_key,
    ):
        routing_settings.METER_ROUTES = {ROUTE_ID: {"price": 0.03, "mint": MINT, "pay_to": PAY_TO}}
        registry_settings.METER_AGENT_KEYS = [{"key_id": AGENT_KEY_ID, "public_key": public_key_b64(signing_key)}]
        nonce_settings.METER_NONCE_STORE = "memory"
        nonce_settings.METER_NONCE_TTL_SECONDS = 3600
        nonce_settings.METER_NONCE_SWEEP_INTERVAL_SECONDS = 300
        facilitator_settings.METER_FACILITATOR_ENABLED = False

        pipeline = pipeline_from_settings(ledger)
        assert pipeline.facilitator is None
        assert pipeline.nonce_store.ttl_seconds == 3600
        assert asyncio.run(pipeline.registry.lookup(AGENT_KEY_ID)) is not None
        assert quote_for(pipeline.routing, ROUTE_ID).price == 0.03
