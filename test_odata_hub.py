#!/usr/bin/env python3
"""
Tests for the command line helpers.
"""

import unittest

from odata_hub import parse_http_addr, parse_service_list


class TestCommandLineHelpers(unittest.TestCase):

    def test_parse_service_list(self):
        self.assertIsNone(parse_service_list(None))
        self.assertIsNone(parse_service_list(" , "))
        self.assertEqual(parse_service_list("/sap/opu/odata/sap/API_BP, /sap/opu/odata/sap/API_SO;v=0002"),
                         ["/sap/opu/odata/sap/API_BP", "/sap/opu/odata/sap/API_SO;v=0002"])

    def test_parse_http_addr(self):
        self.assertEqual(parse_http_addr(":8080"), ("0.0.0.0", 8080))
        self.assertEqual(parse_http_addr("localhost:9000"), ("localhost", 9000))
        self.assertEqual(parse_http_addr("7000"), ("0.0.0.0", 7000))
        self.assertEqual(parse_http_addr("bogus"), ("0.0.0.0", 8080))


if __name__ == "__main__":
    unittest.main()
