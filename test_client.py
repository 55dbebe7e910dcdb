#!/usr/bin/env python3
"""
Tests for the OData v2 entity client: URLs, key predicates, CSRF handling and error parsing.
"""

import asyncio
import json
import unittest
from unittest.mock import MagicMock, patch

import requests

from odata_hub_lib.client import (
    EntityClient,
    encode_query_params,
    format_key_literal,
    format_key_predicate,
    join_service_url,
)
from odata_hub_lib.models import Destination, EntityType, Property


def make_response(status_code=200, payload=None, headers=None, text=None, reason="OK"):
    response = MagicMock()
    response.status_code = status_code
    response.reason = reason
    response.headers = headers or {}
    if payload is not None:
        body = json.dumps(payload)
        response.json.return_value = payload
    else:
        body = text or ""
        response.json.side_effect = ValueError("No JSON")
    response.text = body
    response.content = body.encode()
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(response=response)
    return response


def make_entity(*keys):
    """Entity type whose key properties are the given (name, EDM type) pairs."""
    return EntityType(name="Thing", keys=[name for name, _ in keys],
                      properties=[Property(name=name, type=edm_type) for name, edm_type in keys])


class TestHelpers(unittest.TestCase):
    """Tests for URL and key helpers."""

    def test_string_key_predicate(self):
        self.assertEqual(format_key_predicate(make_entity(("ID", "Edm.String")), {"ID": "1"}), "('1')")

    def test_string_key_escaping(self):
        entity = make_entity(("ID", "Edm.String"))
        self.assertEqual(format_key_predicate(entity, {"ID": "O'Brien"}), "('O''Brien')")
        self.assertEqual(format_key_predicate(entity, {"ID": "A/B C"}), "('A%2FB%20C')")

    def test_string_key_resembling_composite_is_quoted(self):
        entity = make_entity(("ID", "Edm.String"))
        self.assertEqual(format_key_predicate(entity, {"ID": "a='b'"}), "('a%3D''b''')")

    def test_numeric_key_is_bare(self):
        entity = make_entity(("Id", "Edm.Int32"))
        self.assertEqual(format_key_predicate(entity, {"Id": 42}), "(42)")
        self.assertEqual(format_key_predicate(entity, {"Id": "42"}), "(42)")

    def test_guid_key_is_prefixed(self):
        entity = make_entity(("Id", "Edm.Guid"))
        self.assertEqual(format_key_predicate(entity, {"Id": "005056a0-1b2c-1ed9-8f7c-000000000001"}),
                         "(guid'005056a0-1b2c-1ed9-8f7c-000000000001')")

    def test_boolean_key_is_lowercase(self):
        self.assertEqual(format_key_literal(True, "Edm.Boolean"), "true")

    def test_composite_key_formats_each_part_by_type(self):
        entity = make_entity(("SalesOrder", "Edm.String"), ("SalesOrderItem", "Edm.Int32"))
        self.assertEqual(format_key_predicate(entity, {"SalesOrderItem": 10, "SalesOrder": "500"}),
                         "(SalesOrder='500',SalesOrderItem=10)")

    def test_composite_key_doubles_quotes(self):
        entity = make_entity(("A", "Edm.String"), ("B", "Edm.String"))
        self.assertEqual(format_key_predicate(entity, {"A": "O'Brien", "B": "x"}), "(A='O''Brien',B='x')")

    def test_query_params_use_percent_20(self):
        encoded = encode_query_params({'$filter': "Name eq 'A B'"})
        self.assertNotIn('+', encoded)
        self.assertIn('%20', encoded)
        self.assertTrue(encoded.startswith('$filter='))

    def test_join_service_url(self):
        self.assertEqual(join_service_url("https://sap.example.com/", "/sap/opu/odata/sap/API_BP/"),
                         "https://sap.example.com/sap/opu/odata/sap/API_BP")
        self.assertEqual(join_service_url("https://sap.example.com", "https://other.example.com/svc"),
                         "https://other.example.com/svc")


class TestEntityClient(unittest.TestCase):
    """Tests for EntityClient calls with a mocked requests session."""

    def setUp(self):
        self.client = EntityClient()
        self.destination = Destination(name="SAP_SYSTEM", url="https://sap.example.com",
                                       username="user", password="pass")
        self.service_url = "/sap/opu/odata/sap/API_BP"

    @patch('requests.Session.request')
    def test_read_unwraps_results(self, mock_request):
        mock_request.return_value = make_response(payload={"d": {"results": [{"ID": "1"}, {"ID": "2"}]}})
        results = asyncio.run(self.client.read(self.destination, self.service_url, "CustomerSet",
                                               {"$top": 2, "$filter": "Name eq 'A B'"}))
        self.assertEqual(results, [{"ID": "1"}, {"ID": "2"}])

        method, url = mock_request.call_args.args[:2]
        self.assertEqual(method, "GET")
        self.assertTrue(url.startswith("https://sap.example.com/sap/opu/odata/sap/API_BP/CustomerSet?"))
        self.assertIn("$format=json", url)
        self.assertIn("$top=2", url)
        self.assertIn("Name%20eq%20%27A%20B%27", url)

    @patch('requests.Session.request')
    def test_read_one_uses_key_predicate(self, mock_request):
        mock_request.return_value = make_response(payload={"d": {"ID": "1", "Name": "A"}})
        entity = asyncio.run(self.client.read_one(self.destination, self.service_url, "CustomerSet", "('1')",
                                                  {"$select": "Name"}))
        self.assertEqual(entity, {"ID": "1", "Name": "A"})
        url = mock_request.call_args.args[1]
        self.assertIn("/CustomerSet('1')?", url)
        self.assertIn("$select=Name", url)

    @patch('requests.Session.request')
    def test_read_one_composite_key(self, mock_request):
        mock_request.return_value = make_response(payload={"d": {}})
        asyncio.run(self.client.read_one(self.destination, self.service_url, "A_SalesOrderItem",
                                         "(SalesOrder='500',SalesOrderItem=10)"))
        self.assertIn("/A_SalesOrderItem(SalesOrder='500',SalesOrderItem=10)", mock_request.call_args.args[1])

    @patch('requests.Session.get')
    @patch('requests.Session.request')
    def test_create_fetches_csrf_token(self, mock_request, mock_get):
        mock_get.return_value = make_response(headers={'x-csrf-token': 'token-123'})
        mock_request.return_value = make_response(status_code=201, payload={"d": {"ID": "2"}})

        created = asyncio.run(self.client.create(self.destination, self.service_url, "CustomerSet", {"Name": "B"}))

        self.assertEqual(created, {"ID": "2"})
        self.assertEqual(mock_get.call_args.kwargs["headers"], {'X-CSRF-Token': 'Fetch'})
        self.assertEqual(mock_request.call_args.args[0], "POST")
        self.assertEqual(mock_request.call_args.kwargs["headers"]["X-CSRF-Token"], "token-123")
        self.assertEqual(mock_request.call_args.kwargs["json"], {"Name": "B"})

    @patch('requests.Session.get')
    @patch('requests.Session.request')
    def test_csrf_refetch_on_validation_failure(self, mock_request, mock_get):
        mock_get.side_effect = [make_response(headers={'x-csrf-token': 'stale'}),
                                make_response(headers={'x-csrf-token': 'fresh'})]
        mock_request.side_effect = [
            make_response(status_code=403, text="CSRF token validation failed", reason="Forbidden",
                          headers={'x-csrf-token': 'Required'}),
            make_response(status_code=204),
        ]

        result = asyncio.run(self.client.update(self.destination, self.service_url, "CustomerSet", "('1')",
                                                {"Name": "C"}))

        self.assertIsNone(result)
        self.assertEqual(mock_request.call_count, 2)
        self.assertEqual(mock_request.call_args.args[0], "MERGE")
        self.assertEqual(mock_request.call_args.kwargs["headers"]["X-CSRF-Token"], "fresh")

    @patch('requests.Session.get')
    @patch('requests.Session.request')
    def test_update_method_not_allowed_is_not_retried(self, mock_request, mock_get):
        mock_get.return_value = make_response(headers={'x-csrf-token': 't'})
        mock_request.return_value = make_response(status_code=405, reason="Method Not Allowed", text="")
        with self.assertRaises(ValueError) as ctx:
            asyncio.run(self.client.update(self.destination, self.service_url, "CustomerSet", "('1')",
                                           {"Name": "C"}))
        self.assertEqual(str(ctx.exception), "OData request failed (405): HTTP 405: Method Not Allowed")
        self.assertEqual([c.args[0] for c in mock_request.call_args_list], ["MERGE"])

    @patch('requests.Session.get')
    @patch('requests.Session.request')
    def test_delete(self, mock_request, mock_get):
        mock_get.return_value = make_response(headers={'x-csrf-token': 't'})
        mock_request.return_value = make_response(status_code=204)
        self.assertIsNone(asyncio.run(self.client.delete(self.destination, self.service_url, "CustomerSet", "('7')")))
        self.assertEqual(mock_request.call_args.args[0], "DELETE")
        self.assertTrue(mock_request.call_args.args[1].endswith("/CustomerSet('7')"))

    @patch('requests.Session.request')
    def test_odata_error_message_is_reported(self, mock_request):
        mock_request.return_value = make_response(
            status_code=400, reason="Bad Request",
            payload={"error": {"code": "SY/530", "message": {"lang": "en", "value": "Invalid filter expression"}}})
        with self.assertRaises(ValueError) as ctx:
            asyncio.run(self.client.read(self.destination, self.service_url, "CustomerSet"))
        self.assertEqual(str(ctx.exception), "OData request failed (400): Invalid filter expression")

    def test_session_uses_destination_credentials(self):
        session = self.client._new_session(self.destination)
        self.assertEqual(session.auth, ("user", "pass"))
        self.assertEqual(session.headers["Accept"], "application/json")

    def test_session_prefers_destination_headers(self):
        destination = Destination(name="D", url="https://sap.example.com",
                                  headers={"Authorization": "Bearer exchanged"})
        session = self.client._new_session(destination)
        self.assertIsNone(session.auth)
        self.assertEqual(session.headers["Authorization"], "Bearer exchanged")


if __name__ == "__main__":
    unittest.main()
