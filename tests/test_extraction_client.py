import unittest
from unittest.mock import MagicMock, mock_open, patch

import requests

from payproof.config_loader import ExtractionSettings
from payproof.errors import PermanentExtractionError, TransientExtractionError
from payproof.extraction_client import ExtractionClient, load_image, parse_extraction_response


def _response(status, body=None):
    r = MagicMock()
    r.status_code = status
    r.json.return_value = body or {}
    r.text = "" if body is None else str(body)
    return r


OK_BODY = {
    "candidates": [
        {"amount": 1250.0, "reference": "GC123456789", "method": "GCash", "confidence": 0.92},
        {"amount": 125.0, "reference": None, "method": None, "confidence": 0.2},
    ],
    "overall_confidence": 0.92,
    "requires_review": False,
    "model": "vision-v2",
}


class TestExtractionClient(unittest.TestCase):
    def setUp(self):
        self.settings = ExtractionSettings(
            base_url="http://extract.local/", api_key="k", timeout_seconds=5.0, max_retries=2, backoff_seconds=1.0
        )
        self.session = MagicMock(spec=requests.Session)
        self.sleep = MagicMock()
        self.client = ExtractionClient(self.settings, session=self.session, sleep=self.sleep)

    def test_successful_extraction(self):
        self.session.post.return_value = _response(200, OK_BODY)

        result = self.client.extract(b"img")

        self.assertEqual(len(result.candidates), 2)
        self.assertEqual(result.primary().reference, "GC123456789")
        self.assertEqual(result.overall_confidence, 0.92)
        self.assertEqual(result.model, "vision-v2")
        args, kwargs = self.session.post.call_args
        self.assertEqual(args[0], "http://extract.local/api/extract")
        self.assertEqual(kwargs["timeout"], 5.0)
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer k")
        self.sleep.assert_not_called()

    def test_retries_then_succeeds(self):
        self.session.post.side_effect = [_response(503), _response(200, OK_BODY)]

        result = self.client.extract(b"img")

        self.assertEqual(result.overall_confidence, 0.92)
        self.assertEqual(self.session.post.call_count, 2)
        self.sleep.assert_called_once_with(1.0)

    def test_gives_up_with_transient_error(self):
        self.session.post.return_value = _response(429)

        with self.assertRaises(TransientExtractionError):
            self.client.extract(b"img")
        self.assertEqual(self.session.post.call_count, 3)
        self.assertEqual([c.args[0] for c in self.sleep.call_args_list], [1.0, 2.0])

    def test_timeouts_are_transient(self):
        self.session.post.side_effect = requests.Timeout("read timed out")
        with self.assertRaises(TransientExtractionError):
            self.client.extract(b"img")

    def test_unprocessable_image_is_permanent(self):
        self.session.post.return_value = _response(422, {"error": "not a receipt"})
        with self.assertRaises(PermanentExtractionError):
            self.client.extract(b"img")
        self.assertEqual(self.session.post.call_count, 1)

    def test_non_json_body_is_retried_then_transient(self):
        bad = _response(200)
        bad.json.side_effect = ValueError("Expecting value: line 1 column 1 (char 0)")
        self.session.post.return_value = bad

        with self.assertRaises(TransientExtractionError):
            self.client.extract(b"img")
        self.assertEqual(self.session.post.call_count, 3)

    def test_malformed_body_then_good_body(self):
        self.session.post.side_effect = [_response(200, {"data": "oops"}), _response(200, OK_BODY)]

        result = self.client.extract(b"img")

        self.assertEqual(result.overall_confidence, 0.92)
        self.assertEqual(self.session.post.call_count, 2)

    def test_empty_image_is_permanent(self):
        with self.assertRaises(PermanentExtractionError):
            self.client.extract(b"")
        self.session.post.assert_not_called()


class TestParseExtractionResponse(unittest.TestCase):
    def test_camel_case_and_data_wrapper(self):
        result = parse_extraction_response({
            "data": {
                "candidates": [{"amount": "980.00", "confidence": 0.78}],
                "overallConfidence": 0.78,
                "requiresReview": True,
            }
        })
        self.assertEqual(result.candidates[0].amount, 980.0)
        self.assertIsNone(result.candidates[0].reference)
        self.assertTrue(result.requires_review)

    def test_overall_confidence_defaults_to_best_candidate(self):
        result = parse_extraction_response({"candidates": [{"confidence": 0.4}, {"confidence": 0.6}]})
        self.assertEqual(result.overall_confidence, 0.6)

    def test_malformed_candidates_are_dropped(self):
        result = parse_extraction_response({"candidates": [{"amount": "n/a"}, {"amount": 5}]})
        self.assertEqual([c.amount for c in result.candidates], [5.0])

    def test_non_dict_candidates_are_dropped(self):
        result = parse_extraction_response({"candidates": ["GC123", 42, {"amount": 7, "confidence": 0.5}]})
        self.assertEqual([c.amount for c in result.candidates], [7.0])

    def test_non_object_is_permanent(self):
        with self.assertRaises(PermanentExtractionError):
            parse_extraction_response(["nope"])


class TestLoadImage(unittest.TestCase):
    def test_local_file(self):
        with patch("payproof.extraction_client.os.path.exists", return_value=True), \
                patch("builtins.open", mock_open(read_data=b"bytes")):
            self.assertEqual(load_image("file:///tmp/p.jpg"), b"bytes")

    def test_missing_local_file_is_permanent(self):
        with self.assertRaises(PermanentExtractionError):
            load_image("/definitely/not/here.jpg")

    @patch("payproof.extraction_client.requests.get")
    def test_http_not_found_is_permanent(self, mock_get):
        mock_get.return_value = _response(404)
        with self.assertRaises(PermanentExtractionError):
            load_image("https://cdn.example.com/p.jpg")

    @patch("payproof.extraction_client.requests.get")
    def test_http_server_error_is_transient(self, mock_get):
        mock_get.return_value = _response(502)
        with self.assertRaises(TransientExtractionError):
            load_image("https://cdn.example.com/p.jpg")


if __name__ == "__main__":
    unittest.main()
