import os
import tempfile
import unittest

import yaml

from stackformer.utils.config import Config, load_yaml


class TestConfig(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.yaml_path = os.path.join(self.temp_dir.name, "config.yaml")

    def tearDown(self):
        self.temp_dir.cleanup()

    def _write(self, data):
        with open(self.yaml_path, "w") as f:
            yaml.dump(data, f)

    def test_load_yaml_valid(self):
        self._write({"model": "mbart", "rotary": {"base": 10000}})

        config = load_yaml(self.yaml_path)
        self.assertIsInstance(config, Config)
        self.assertEqual(config.data["model"], "mbart")
        self.assertEqual(config.data["rotary"]["base"], 10000)

    def test_load_yaml_invalid_structure(self):
        # List at root instead of dict
        self._write(["hidden_size", "num_blocks"])

        with self.assertRaises(ValueError):
            load_yaml(self.yaml_path)

    def test_load_yaml_file_not_found(self):
        with self.assertRaises(FileNotFoundError):
            load_yaml("non_existent_file.yaml")


if __name__ == "__main__":
    unittest.main()
