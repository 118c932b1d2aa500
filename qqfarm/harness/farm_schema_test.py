# Copyright 2025 The qqfarm Authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Tests for the schema registry."""

import copy
import json
import os
import tempfile

from absl.testing import absltest, parameterized

from qqfarm.harness import farm_schema
from qqfarm.harness.farm_errors import SchemaLoadError, UnknownTypeError

_CATALOGUE = {
    "enums": {"Color": {"RED": 0, "GREEN": 1}},
    "messages": {
        "Leaf": {"fields": [
            {"name": "id", "number": 1, "type": "int64", "label": "required"},
            {"name": "color", "number": 2, "type": "enum", "type_name": "Color"},
        ]},
        "Tree": {"fields": [
            {"name": "leaves", "number": 1, "type": "message",
             "type_name": "Leaf", "label": "repeated"},
        ]},
        "TreeReply": {"fields": []},
    },
    "routes": [{"request": "Tree", "reply": "TreeReply",
                "service": "test.TreeService", "method": "Grow"}],
    "notifies": [{"method": "LeafNotify", "message": "Leaf"}],
}


class SchemaRegistryTest(parameterized.TestCase):

  def test_describe_resolves_fields(self):
    registry = farm_schema.SchemaRegistry(_CATALOGUE).load()
    leaf = registry.describe("Leaf")
    self.assertEqual(leaf.field("id").number, 1)
    self.assertTrue(leaf.field("id").required)
    self.assertEqual(leaf.field_by_number(2).name, "color")
    self.assertTrue(registry.describe("Tree").field("leaves").repeated)

  def test_unknown_message(self):
    registry = farm_schema.SchemaRegistry(_CATALOGUE).load()
    with self.assertRaises(UnknownTypeError) as ctx:
      registry.describe("Branch")
    self.assertIn("Branch", str(ctx.exception))

  def test_routes_and_notifies(self):
    registry = farm_schema.SchemaRegistry(_CATALOGUE).load()
    route = registry.route("Tree")
    self.assertEqual((route.service, route.method, route.reply),
                     ("test.TreeService", "Grow", "TreeReply"))
    self.assertEqual(registry.reply_route("test.TreeService", "Grow").request, "Tree")
    self.assertEqual(registry.notify_descriptor("LeafNotify"), "Leaf")
    with self.assertRaises(UnknownTypeError):
      registry.route("Leaf")
    with self.assertRaises(UnknownTypeError):
      registry.notify_descriptor("Nope")

  def test_enum_lookup(self):
    registry = farm_schema.SchemaRegistry(_CATALOGUE).load()
    color = registry.describe_enum("Color")
    self.assertEqual(color.number_of("GREEN"), 1)
    self.assertEqual(color.name_of(0), "RED")
    self.assertFalse(color.has_number(7))

  def _broken(self, mutate):
    catalogue = copy.deepcopy(_CATALOGUE)
    mutate(catalogue)
    return catalogue

  @parameterized.named_parameters(
      ("duplicate_number", lambda c: c["messages"]["Leaf"]["fields"].append(
          {"name": "other", "number": 1, "type": "string"})),
      ("undefined_message", lambda c: c["messages"]["Tree"]["fields"][0].update(
          type_name="Branch")),
      ("undefined_enum", lambda c: c["messages"]["Leaf"]["fields"][1].update(
          type_name="Shade")),
      ("unknown_field_type", lambda c: c["messages"]["Leaf"]["fields"][0].update(
          type="float128")),
      ("route_to_nowhere", lambda c: c["routes"][0].update(reply="Missing")),
      ("bad_shape", lambda c: c.update(messages=[])),
  )
  def test_invalid_catalogue_rejected(self, mutate):
    with self.assertRaises(SchemaLoadError):
      farm_schema.SchemaRegistry(self._broken(mutate)).load()

  def test_malformed_json_file(self):
    with tempfile.TemporaryDirectory() as tmp:
      path = os.path.join(tmp, "broken.json")
      with open(path, "w") as f:
        f.write("{not json")
      with self.assertRaises(SchemaLoadError):
        farm_schema.SchemaRegistry(path).load()

  def test_failed_reload_keeps_previous_table(self):
    registry = farm_schema.SchemaRegistry(_CATALOGUE).load()
    broken = self._broken(lambda c: c["routes"][0].update(reply="Missing"))
    with self.assertRaises(SchemaLoadError):
      registry.load(broken)
    self.assertEqual(registry.describe("Leaf").field("id").number, 1)
    self.assertEqual(registry.route("Tree").reply, "TreeReply")

  def test_load_from_file(self):
    with tempfile.TemporaryDirectory() as tmp:
      path = os.path.join(tmp, "catalogue.json")
      with open(path, "w") as f:
        json.dump(_CATALOGUE, f)
      registry = farm_schema.SchemaRegistry(path).load()
    self.assertEqual(registry.names(), ["Leaf", "Tree", "TreeReply"])


class BundledCatalogueTest(absltest.TestCase):

  def test_bundled_catalogue_loads(self):
    registry = farm_schema.default_registry()
    self.assertIs(registry, farm_schema.default_registry())
    self.assertIn("GateMessage", registry.names())
    self.assertEqual(registry.route("HarvestRequest").method, "Harvest")
    self.assertEqual(registry.notify_descriptor("Kickout"), "KickoutNotify")

  def test_every_route_resolves(self):
    registry = farm_schema.default_registry()
    for route in registry.routes():
      registry.describe(route.request)
      registry.describe(route.reply)
      self.assertEqual(
          registry.reply_route(route.service, route.method).request, route.request
      )


if __name__ == "__main__":
  absltest.main()
