from __future__ import annotations

import os
import unittest
from unittest.mock import patch

from landtoken.backend.types import ExchangeRate
from landtoken.orchestration import SagaProgress, SagaStepId, StepStatus
from landtoken.runtime import AppSettings
from landtoken.signer import build_fee_payment, is_valid_account_ref, make_transaction_id


class AppSettingsTests(unittest.TestCase):
    def test_defaults(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            settings = AppSettings.from_env()

        self.assertEqual(settings.api_base_url, "http://localhost:3001")
        self.assertEqual(settings.retry_max_attempts, 3)
        self.assertEqual(settings.retry_initial_delay_seconds, 1.5)
        self.assertEqual(settings.verify_max_attempts, 12)
        self.assertEqual(settings.verify_timeout_seconds, 60.0)
        self.assertEqual(settings.cache_ttl_seconds, 30.0)
        self.assertFalse(settings.uses_redis)

    def test_values_are_clamped_and_normalized(self) -> None:
        env = {
            "RETRY_MAX_ATTEMPTS": "0",
            "RETRY_JITTER_RATIO": "4",
            "HEDERA_NETWORK": "previewnet",
            "CACHE_BACKEND": "REDIS",
            "OPERATION_REGISTRY_BACKEND": "etcd",
            "VERIFY_MAX_ATTEMPTS": "not-a-number",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = AppSettings.from_env()

        self.assertEqual(settings.retry_max_attempts, 1)
        self.assertEqual(settings.retry_jitter_ratio, 1.0)
        self.assertEqual(settings.hedera_network, "testnet")
        self.assertEqual(settings.cache_backend, "redis")
        self.assertEqual(settings.operation_registry_backend, "memory")
        self.assertEqual(settings.verify_max_attempts, 12)
        self.assertTrue(settings.uses_redis)


class SignerTypesTests(unittest.TestCase):
    def test_account_ref_validation(self) -> None:
        self.assertTrue(is_valid_account_ref("0.0.12345"))
        self.assertFalse(is_valid_account_ref("0.0."))
        self.assertFalse(is_valid_account_ref("1.2.3"))
        self.assertFalse(is_valid_account_ref(None))

    def test_transaction_id_uses_ledger_format(self) -> None:
        self.assertEqual(make_transaction_id("0.0.123", now=456.25), "0.0.123@456.250000000")

    def test_fee_payment_targets_treasury(self) -> None:
        quote = ExchangeRate(
            usd_to_hbar=12.5,
            mint_fee_usd=5.0,
            mint_fee_hbar=62.5,
            network="testnet",
            treasury_account="0.0.900",
        )

        transaction = build_fee_payment(payer="0.0.123", quote=quote, now=10.0)

        self.assertEqual(transaction.transaction_id, "0.0.123@10.000000000")
        self.assertEqual(transaction.amount_tinybars, 6_250_000_000)
        self.assertEqual(transaction.memo, "Payment for parcel_mint: 5 USD")
        self.assertIn(b'"treasury":"0.0.900"', transaction.to_bytes())

    def test_fee_payment_rejects_bad_treasury(self) -> None:
        quote = ExchangeRate(
            usd_to_hbar=1.0,
            mint_fee_usd=1.0,
            mint_fee_hbar=1.0,
            network="testnet",
            treasury_account="",
        )
        with self.assertRaises(ValueError):
            build_fee_payment(payer="0.0.123", quote=quote)


class SagaProgressTests(unittest.IsolatedAsyncioTestCase):
    async def test_steps_cannot_start_out_of_order(self) -> None:
        progress = SagaProgress()

        with self.assertRaises(RuntimeError):
            await progress.begin(SagaStepId.PAYMENT_PROCESSING)

    async def test_completed_step_never_regresses(self) -> None:
        progress = SagaProgress()
        await progress.begin(SagaStepId.WALLET_CONNECTION)
        await progress.complete(SagaStepId.WALLET_CONNECTION, "connected")

        with self.assertRaises(RuntimeError):
            await progress.begin(SagaStepId.WALLET_CONNECTION)
        self.assertEqual(progress.step(SagaStepId.WALLET_CONNECTION).status, StepStatus.COMPLETED)
        snapshot = progress.snapshot()
        self.assertEqual(snapshot[0]["status"], StepStatus.COMPLETED.value)
        self.assertEqual(snapshot[0]["detail"], "connected")
        self.assertEqual(len(snapshot), 5)

    async def test_listeners_and_subscribers_see_same_order(self) -> None:
        progress = SagaProgress()
        seen: list[str] = []
        progress.add_listener(lambda update: seen.append(update.status.value))
        updates = progress.subscribe()

        await progress.begin(SagaStepId.WALLET_CONNECTION, "checking")
        await progress.fail(SagaStepId.WALLET_CONNECTION, "cancelled")
        progress.close()

        streamed = [update.status.value async for update in updates]
        self.assertEqual(seen, ["processing", "error"])
        self.assertEqual(streamed, seen)


if __name__ == "__main__":
    unittest.main()
