#!/usr/bin/env python3
"""
Tests for $metadata parsing and service catalog harvesting.
"""

import json
import os
import tempfile
import unittest
from unittest.mock import MagicMock, patch

import requests

from odata_hub_lib.metadata_parser import CatalogHarvester, MetadataParser
from odata_hub_lib.models import Destination

SAMPLE_METADATA = b"""<?xml version="1.0" encoding="utf-8"?>
<edmx:Edmx Version="1.0" xmlns:edmx="http://schemas.microsoft.com/ado/2007/06/edmx"
    xmlns:m="http://schemas.microsoft.com/ado/2007/08/dataservices/metadata"
    xmlns:sap="http://www.sap.com/Protocols/SAPData">
  <edmx:DataServices m:DataServiceVersion="2.0">
    <Schema Namespace="API_BUSINESS_PARTNER" xmlns="http://schemas.microsoft.com/ado/2008/09/edm">
      <EntityType Name="A_BusinessPartnerType">
        <Key><PropertyRef Name="BusinessPartner"/></Key>
        <Property Name="BusinessPartner" Type="Edm.String" Nullable="false" MaxLength="10"/>
        <Property Name="BusinessPartnerFullName" Type="Edm.String" MaxLength="81"/>
        <Property Name="CreationDate" Type="Edm.DateTime" Precision="0"/>
      </EntityType>
      <EntityType Name="A_AddressEmailAddressType">
        <Key>
          <PropertyRef Name="AddressID"/>
          <PropertyRef Name="Person"/>
        </Key>
        <Property Name="AddressID" Type="Edm.String" Nullable="false"/>
        <Property Name="Person" Type="Edm.String" Nullable="false"/>
        <Property Name="EmailAddress" Type="Edm.String" MaxLength="241"/>
      </EntityType>
      <EntityType Name="A_UnexposedType">
        <Key><PropertyRef Name="Id"/></Key>
        <Property Name="Id" Type="Edm.String" Nullable="false"/>
      </EntityType>
      <EntityType Name="A_KeylessType">
        <Property Name="Value" Type="Edm.String"/>
      </EntityType>
      <EntityContainer Name="API_BUSINESS_PARTNER_Entities" m:IsDefaultEntityContainer="true">
        <EntitySet Name="A_BusinessPartner" EntityType="API_BUSINESS_PARTNER.A_BusinessPartnerType"
            sap:deletable="false"/>
        <EntitySet Name="A_AddressEmailAddress" EntityType="API_BUSINESS_PARTNER.A_AddressEmailAddressType"
            sap:creatable="false" sap:updatable="false" sap:deletable="false"/>
        <EntitySet Name="A_Keyless" EntityType="API_BUSINESS_PARTNER.A_KeylessType"/>
      </EntityContainer>
    </Schema>
  </edmx:DataServices>
</edmx:Edmx>
"""


class TestMetadataParser(unittest.TestCase):
    """Tests for the MetadataParser class."""

    def setUp(self):
        self.entity_types = {e.name: e for e in MetadataParser().parse(SAMPLE_METADATA)}

    def test_only_exposed_types_with_keys(self):
        self.assertEqual(set(self.entity_types), {"A_BusinessPartnerType", "A_AddressEmailAddressType"})

    def test_keys_namespace_and_entity_set(self):
        bp = self.entity_types["A_BusinessPartnerType"]
        self.assertEqual(bp.keys, ["BusinessPartner"])
        self.assertEqual(bp.namespace, "API_BUSINESS_PARTNER")
        self.assertEqual(bp.entity_set, "A_BusinessPartner")

    def test_properties(self):
        bp = self.entity_types["A_BusinessPartnerType"]
        props = {p.name: p for p in bp.properties}
        self.assertEqual(props["BusinessPartner"].max_length, 10)
        self.assertFalse(props["BusinessPartner"].nullable)
        self.assertTrue(props["BusinessPartnerFullName"].nullable)
        self.assertEqual(props["CreationDate"].type, "Edm.DateTime")
        self.assertIsNone(props["CreationDate"].max_length)

    def test_sap_capability_annotations(self):
        bp = self.entity_types["A_BusinessPartnerType"]
        self.assertTrue(bp.creatable)
        self.assertTrue(bp.updatable)
        self.assertFalse(bp.deletable)
        email = self.entity_types["A_AddressEmailAddressType"]
        self.assertEqual(email.capabilities(),
                         {"readable": True, "creatable": False, "updatable": False, "deletable": False})

    def test_composite_keys_in_declared_order(self):
        self.assertEqual(self.entity_types["A_AddressEmailAddressType"].keys, ["AddressID", "Person"])


class TestCatalogHarvester(unittest.TestCase):
    """Tests for catalog files and harvesting through the discovery destination."""

    def setUp(self):
        self.resolver = MagicMock()
        self.resolver.resolve_discovery.return_value = Destination(
            name="SAP_SYSTEM", url="https://sap.example.com", username="tech", password="pw")
        self.harvester = CatalogHarvester(self.resolver)

    def test_load_catalog_file(self):
        data = {"services": [{
            "id": "API_BP", "title": "Business Partner", "url": "/sap/opu/odata/sap/API_BP",
            "entityTypes": [{"name": "Customer", "entitySet": "CustomerSet", "keys": ["ID"],
                             "properties": [{"name": "ID"}, {"name": "Email", "maxLength": 241}],
                             "deletable": False}]
        }]}
        with tempfile.NamedTemporaryFile('w', suffix='.json', delete=False) as f:
            json.dump(data, f)
            path = f.name
        try:
            catalog = self.harvester.load_catalog(catalog_file=path)
        finally:
            os.unlink(path)
        customer = catalog.find_entity("API_BP", "Customer")
        self.assertEqual(customer.entity_set, "CustomerSet")
        self.assertFalse(customer.deletable)
        self.assertEqual(customer.properties[1].max_length, 241)
        self.resolver.resolve_discovery.assert_not_called()

    def test_load_catalog_file_accepts_plain_list(self):
        with tempfile.NamedTemporaryFile('w', suffix='.json', delete=False) as f:
            json.dump([{"id": "ZFOO"}], f)
            path = f.name
        try:
            catalog = self.harvester.load_catalog_file(path)
        finally:
            os.unlink(path)
        self.assertEqual([s.id for s in catalog.services], ["ZFOO"])

    @patch('requests.Session.get')
    def test_harvest_explicit_services(self, mock_get):
        mock_get.return_value = MagicMock(status_code=200, content=SAMPLE_METADATA)

        catalog = self.harvester.load_catalog(services=["/sap/opu/odata/sap/API_BUSINESS_PARTNER;v=0002"])

        self.assertEqual(mock_get.call_args.args[0],
                         "https://sap.example.com/sap/opu/odata/sap/API_BUSINESS_PARTNER;v=0002/$metadata")
        service = catalog.find_service("API_BUSINESS_PARTNER")
        self.assertEqual(len(service.entity_types), 2)
        self.resolver.resolve_discovery.assert_called_once_with()

    @patch('requests.Session.get')
    def test_harvest_gateway_catalog(self, mock_get):
        collection = MagicMock(status_code=200)
        collection.json.return_value = {"d": {"results": [
            {"ID": "API_BUSINESS_PARTNER_0001", "TechnicalServiceName": "API_BUSINESS_PARTNER",
             "Title": "Business Partner (A2X)", "Description": "Business partner master data",
             "ServiceUrl": "https://sap.example.com/sap/opu/odata/sap/API_BUSINESS_PARTNER",
             "TechnicalServiceVersion": "1"},
            {"ID": "BROKEN", "Title": "No url"},
        ]}}
        metadata = MagicMock(status_code=200, content=SAMPLE_METADATA)
        mock_get.side_effect = [collection, metadata]

        catalog = self.harvester.harvest()

        first_url = mock_get.call_args_list[0].args[0]
        self.assertEqual(first_url, "https://sap.example.com/sap/opu/odata/IWFND/CATALOGSERVICE;v=2/ServiceCollection")
        self.assertEqual(len(catalog.services), 1)
        service = catalog.services[0]
        self.assertEqual(service.id, "API_BUSINESS_PARTNER")
        self.assertEqual(service.title, "Business Partner (A2X)")
        self.assertEqual(service.version, "1")

    @patch('requests.Session.get')
    def test_unreachable_service_is_skipped(self, mock_get):
        ok = MagicMock(status_code=200, content=SAMPLE_METADATA)
        mock_get.side_effect = [requests.exceptions.ConnectionError("refused"), ok]

        catalog = self.harvester.harvest(["/sap/opu/odata/sap/DOWN", "/sap/opu/odata/sap/UP"])

        self.assertEqual([s.id for s in catalog.services], ["UP"])

    def test_harvest_requires_resolver(self):
        with self.assertRaises(ValueError):
            CatalogHarvester().harvest(["/sap/opu/odata/sap/X"])


if __name__ == "__main__":
    unittest.main()
