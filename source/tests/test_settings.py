from __future__ import annotations

import tempfile
import textwrap
import unittest
from pathlib import Path

from helpers import SECRET, bootstrap_tests

bootstrap_tests()

from pvefleet.core.errors import InvalidArgumentError  # noqa: E402
from pvefleet.core.variables import SENSITIVE_PLACEHOLDER, Sensitive, Variable  # noqa: E402
from pvefleet.infra.settings import load_settings, parse_settings  # noqa: E402

CONFIG = textwrap.dedent(
    """
    proxmox:
      api_url: https://pve.lan:8006/api2/json
      node: pve
      token_id: fleet@pve!provision
    network:
      gateway: 192.168.1.1
      cidr: 24
      bridge: vmbr0
      vlan_tag: 20
    template_vmid: 9000
    ssh_public_keys:
      - ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIFleet ops@example
    defaults:
      parallelism: 2
    fleets:
      - id: k3s
        name_prefix: k3s-node
        count: 3
        vmid_base: 9101
        ip_start: 192.168.1.21
        cores: 2
        memory_mb: 4096
        disk_size: 32G
    """
)


class SettingsTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.path = Path(self.tmpdir.name) / "fleet.yaml"
        self.path.write_text(CONFIG, encoding="utf-8")
        self.env = {"PM_API_TOKEN_SECRET": SECRET}

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_load_defaults_and_secret(self):
        settings = load_settings(self.path, self.env)
        self.assertEqual(settings.proxmox.api_url, "https://pve.lan:8006")
        self.assertTrue(settings.proxmox.tls_insecure)
        self.assertEqual(settings.proxmox.token_secret.reveal(), SECRET)
        self.assertNotIn(SECRET, repr(settings))
        self.assertEqual(settings.parallelism, 2)
        self.assertEqual(settings.ci_user, "ubuntu")
        fleet = settings.fleets["k3s"]
        self.assertEqual((fleet.count, fleet.template_vmid, fleet.storage), (3, 9000, "local-lvm"))

    def test_environment_overrides_document(self):
        env = dict(self.env, PM_NODE="pve2", PM_TLS_INSECURE="false", TEMPLATE_VMID="9001", PM_API_URL="")
        settings = load_settings(self.path, env)
        self.assertEqual(settings.proxmox.node, "pve2")
        self.assertFalse(settings.proxmox.tls_insecure)
        self.assertEqual(settings.fleets["k3s"].template_vmid, 9001)
        self.assertEqual(settings.proxmox.api_url, "https://pve.lan:8006")

    def test_missing_secret_is_invalid(self):
        with self.assertRaises(InvalidArgumentError) as ctx:
            load_settings(self.path, {})
        self.assertIn("PM_API_TOKEN_SECRET", str(ctx.exception))

    def test_ssh_key_file_is_merged_and_deduplicated(self):
        key_file = Path(self.tmpdir.name) / "id.pub"
        key_file.write_text(
            "# team keys\nssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIFleet ops@example\nssh-rsa AAAAB3Nza second@example\n",
            encoding="utf-8",
        )
        settings = load_settings(self.path, dict(self.env, SSH_PUBLIC_KEY_FILE=str(key_file)))
        self.assertEqual(len(settings.ssh_public_keys), 2)
        self.assertEqual(settings.ssh_public_keys[1], "ssh-rsa AAAAB3Nza second@example")

    def test_missing_key_file_is_invalid(self):
        with self.assertRaises(InvalidArgumentError):
            load_settings(self.path, dict(self.env, SSH_PUBLIC_KEY_FILE="/nonexistent/id.pub"))

    def test_invalid_descriptors_fail_at_load(self):
        raw = {
            "proxmox": {"api_url": "https://pve", "node": "pve", "token_id": "t", "token_secret": "s"},
            "network": {"gateway": "192.168.1.1", "cidr": 24},
            "ssh_public_keys": ["ssh-ed25519 AAAA"],
            "template_vmid": 9000,
            "fleets": [{"id": "k3s", "count": 3, "vmid_base": 9101, "ip_start": "192.168.1.254"}],
        }
        with self.assertRaises(InvalidArgumentError):
            parse_settings(raw, {})

    def test_bad_vlan_and_url(self):
        base = {
            "proxmox": {"api_url": "pve.lan", "node": "pve", "token_id": "t", "token_secret": "s"},
            "fleets": [],
        }
        with self.assertRaises(InvalidArgumentError):
            parse_settings(base, {})
        base["proxmox"]["api_url"] = "https://pve.lan"
        base["network"] = {"gateway": "192.168.1.1", "vlan_tag": 5000}
        with self.assertRaises(InvalidArgumentError):
            parse_settings(base, {})

    def test_sections_must_be_mappings(self):
        base = {
            "proxmox": {"api_url": "https://pve.lan", "node": "pve", "token_id": "t", "token_secret": "s"},
            "fleets": [],
        }
        for key, value in (("proxmox", "nope"), ("network", ["192.168.1.1"]), ("defaults", 4)):
            with self.subTest(key=key):
                raw = dict(base, **{key: value})
                with self.assertRaises(InvalidArgumentError) as ctx:
                    parse_settings(raw, {})
                self.assertIn(f"{key} must be a mapping", str(ctx.exception))

    def test_fleets_must_be_a_list_of_mappings(self):
        base = {
            "proxmox": {"api_url": "https://pve.lan", "node": "pve", "token_id": "t", "token_secret": "s"},
        }
        with self.assertRaises(InvalidArgumentError) as ctx:
            parse_settings(dict(base, fleets=["k3s"]), {})
        self.assertIn("every fleet must be a mapping, got str", str(ctx.exception))
        with self.assertRaises(InvalidArgumentError) as ctx:
            parse_settings(dict(base, fleets={"k3s": {"count": 3}}), {})
        self.assertIn("fleets must be a list", str(ctx.exception))

    def test_invalid_yaml(self):
        self.path.write_text("fleets: [unclosed", encoding="utf-8")
        with self.assertRaises(InvalidArgumentError):
            load_settings(self.path, self.env)


class VariableTests(unittest.TestCase):
    def test_sensitive_renders_as_placeholder(self):
        secret = Sensitive("hunter2")
        self.assertEqual(str(secret), SENSITIVE_PLACEHOLDER)
        self.assertEqual(f"{secret}", SENSITIVE_PLACEHOLDER)
        self.assertNotIn("hunter2", repr(secret))
        self.assertEqual(secret.reveal(), "hunter2")

    def test_precedence_env_document_default(self):
        var = Variable("CORES", type="int", default=1)
        self.assertEqual(var.resolve(4, {"CORES": "8"}), 8)
        self.assertEqual(var.resolve(4, {"CORES": " "}), 4)
        self.assertEqual(var.resolve(None, {}), 1)

    def test_bad_cast_does_not_echo_value(self):
        var = Variable("TOKEN_NUMBER", type="int", sensitive=True)
        with self.assertRaises(InvalidArgumentError) as ctx:
            var.resolve("not-a-number-s3cret", {})
        self.assertNotIn("s3cret", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
