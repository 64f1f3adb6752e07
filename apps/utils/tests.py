# apps/utils/tests.py
import json
import logging

from django.test import SimpleTestCase, TestCase
from rest_framework.exceptions import ValidationError

from .exceptions import BusinessLogicException, custom_exception_handler
from .logging import JSONFormatter
from .utils import generate_order_number, generate_reference_number
from .validators import validate_phone, normalize_rw_phone, normalize_mtn_phone


class ValidatorTests(SimpleTestCase):
    def test_phone_validator(self):
        self.assertEqual(validate_phone("+250788123456"), "+250788123456")
        with self.assertRaises(ValidationError):
            validate_phone("123")

    def test_normalize_local_number(self):
        self.assertEqual(normalize_rw_phone("0788123456"), "250788123456")
        self.assertEqual(normalize_rw_phone("+250 788 123 456"), "250788123456")
        self.assertEqual(normalize_rw_phone("788123456"), "250788123456")

    def test_normalize_rejects_wrong_length(self):
        with self.assertRaises(ValueError):
            normalize_rw_phone("07881234")

    def test_mtn_prefix_required(self):
        self.assertEqual(normalize_mtn_phone("0798123456"), "250798123456")
        with self.assertRaises(ValueError):
            normalize_mtn_phone("0728123456")  # Airtel


class GeneratorTests(SimpleTestCase):
    def test_order_number_shape(self):
        number = generate_order_number()
        self.assertTrue(number.startswith("EG"))
        self.assertEqual(len(number), 2 + 6 + 3)

    def test_reference_number_shape(self):
        ref = generate_reference_number()
        self.assertTrue(ref.startswith("PAY"))
        self.assertEqual(len(ref), 3 + 8 + 3)


class JSONFormatterTests(SimpleTestCase):
    def test_sensitive_keys_are_redacted(self):
        record = logging.LogRecord(
            name="apps.payments", level=logging.INFO, pathname=__file__, lineno=1,
            msg={"username": "merchant", "password": "abc123", "nested": {"signature": "xyz"}},
            args=None, exc_info=None,
        )
        record.transaction_id = "1700000000000"

        output = json.loads(JSONFormatter().format(record))

        self.assertNotIn("abc123", output["msg"])
        self.assertNotIn("xyz", output["msg"])
        self.assertIn("merchant", output["msg"])
        self.assertEqual(output["transaction_id"], "1700000000000")


class ExceptionHandlerTests(TestCase):
    def test_business_exception_maps_to_400(self):
        response = custom_exception_handler(BusinessLogicException("Nope", code="nope"), {})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data, {"error": "Nope", "code": "nope"})

    def test_unhandled_exception_maps_to_generic_500(self):
        response = custom_exception_handler(RuntimeError("boom"), {})
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.data["code"], "server_error")
        self.assertNotIn("boom", str(response.data))


class HealthCheckTests(TestCase):
    def test_health_endpoint(self):
        response = self.client.get("/api/v1/utils/health/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["components"]["db"], "ok")
