from django.db import connection
from django.test import TestCase

from core.crypto import decrypt_secret, encrypt_secret, is_encrypted_secret, mask_secret
from core.models import Exchange, Trader


class CredentialEncryptionTest(TestCase):
    def setUp(self):
        self.exchange = Exchange.objects.create(canonical="binance", name="Binance")

    def test_crypto_helpers_roundtrip(self):
        plain = "my-secret-key"
        encrypted = encrypt_secret(plain)
        self.assertTrue(is_encrypted_secret(encrypted))
        self.assertNotEqual(encrypted, plain)
        self.assertEqual(decrypt_secret(encrypted), plain)
        self.assertEqual(encrypt_secret(encrypted), encrypted)

    def test_mask_secret_keeps_tail_only(self):
        self.assertEqual(mask_secret("abcdefgh"), "****efgh")
        self.assertEqual(mask_secret("abc"), "***")
        self.assertEqual(mask_secret(None), "")

    def test_trader_credentials_are_encrypted_at_rest(self):
        trader = Trader.objects.create(
            name="alice",
            exchange=self.exchange,
            api_key="k_plain",
            api_secret="s_plain",
        )
        with connection.cursor() as cursor:
            cursor.execute("SELECT api_key, api_secret FROM core_trader WHERE id = %s", [trader.id])
            raw_key, raw_secret = cursor.fetchone()

        self.assertTrue(str(raw_key).startswith("enc::"))
        self.assertTrue(str(raw_secret).startswith("enc::"))
        self.assertNotEqual(raw_secret, "s_plain")

        trader.refresh_from_db()
        self.assertEqual(trader.api_key, "k_plain")
        self.assertEqual(trader.api_secret, "s_plain")

    def test_legacy_plaintext_row_is_readable_and_reencrypted_on_save(self):
        trader = Trader.objects.create(name="bob", exchange=self.exchange, api_key="k", api_secret="s")

        with connection.cursor() as cursor:
            cursor.execute(
                "UPDATE core_trader SET api_key = %s, api_secret = %s WHERE id = %s",
                ["legacy_k", "legacy_s", trader.id],
            )

        legacy = Trader.objects.get(id=trader.id)
        self.assertEqual(legacy.api_key, "legacy_k")
        self.assertEqual(legacy.api_secret, "legacy_s")

        legacy.save(update_fields=["api_key", "api_secret"])

        with connection.cursor() as cursor:
            cursor.execute("SELECT api_key, api_secret FROM core_trader WHERE id = %s", [trader.id])
            raw_key, raw_secret = cursor.fetchone()

        self.assertTrue(str(raw_key).startswith("enc::"))
        self.assertTrue(str(raw_secret).startswith("enc::"))
