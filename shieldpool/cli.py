#!/usr/bin/env python3
"""
Shielded Pool CLI

Operator and attestor tooling for the shielded-operation engine.

Usage:
    shieldpool <command> [subcommand] [options]

Commands:
    attestor    Attestor key generation, attestation signing and checking
    tree        Commitment tree utilities
    config      Configuration management

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import argparse
import json
import sys
import time
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional

import yaml

from shieldpool import __version__


class OutputFormat(Enum):
    """Output format options."""
    JSON = "json"
    YAML = "yaml"
    TEXT = "text"


class CLIError(Exception):
    """CLI error with exit code."""
    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


def format_output(data: Any, fmt: OutputFormat = OutputFormat.JSON) -> str:
    """Format data for output."""
    if fmt == OutputFormat.JSON:
        return json.dumps(data, indent=2, default=str)
    elif fmt == OutputFormat.YAML:
        return yaml.dump(data, default_flow_style=False)
    elif isinstance(data, dict):
        return "\n".join(f"{k}: {v}" for k, v in data.items())
    return str(data)


def read_bytes(arg: str) -> bytes:
    """Hex literal (0x...), hex text file (*.hex) or raw binary file."""
    if arg.startswith("0x"):
        return bytes.fromhex(arg[2:])
    path = Path(arg)
    if not path.exists():
        raise CLIError(f"File not found: {arg}")
    if path.suffix == ".hex":
        text = path.read_text().strip()
        return bytes.fromhex(text[2:] if text.startswith("0x") else text)
    return path.read_bytes()


def read_json(arg: str) -> Any:
    path = Path(arg)
    if not path.exists():
        raise CLIError(f"File not found: {arg}")
    return json.loads(path.read_text())


class ShieldPoolCLI:
    """Main CLI application."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="shieldpool",
            description="Shielded pool engine CLI",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"shieldpool {__version__}",
        )
        self.parser.add_argument(
            "--format", "-f",
            choices=["json", "yaml", "text"],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument(
            "--config", "-c",
            help="YAML configuration file",
        )
        self.parser.add_argument(
            "--quiet", "-q",
            action="store_true",
            help="Suppress non-essential output",
        )

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()

    def _register_commands(self) -> None:
        """Register all command groups."""
        self._register_attestor_commands()
        self._register_tree_commands()
        self._register_config_commands()

    def _register_attestor_commands(self) -> None:
        """Register attestor subcommands."""
        attestor = self.subparsers.add_parser("attestor", help="Attestation signing and checking")
        attestor_sub = attestor.add_subparsers(dest="subcommand")

        # attestor keygen
        keygen = attestor_sub.add_parser("keygen", help="Generate an Ed25519 attestor key")
        keygen.add_argument("--output", "-o", help="Write the keypair JSON to this file")

        # attestor sign
        sign = attestor_sub.add_parser("sign", help="Verify a Groth16 proof and sign the outcome")
        sign.add_argument("--key", "-k", required=True, help="Attestor keypair JSON file")
        sign.add_argument("--proof", "-p", required=True, help="Proof (0x-hex, .hex file or binary file)")
        sign.add_argument("--inputs", "-i", required=True, help="Public inputs (0x-hex, .hex file or binary file)")
        sign.add_argument("--vk", "-v", required=True, help="Verifying key (0x-hex, .hex file or binary file)")
        sign.add_argument("--timestamp", "-t", type=int, help="Attestation timestamp (default: now)")

        # attestor check
        check = attestor_sub.add_parser("check", help="Check an attestation")
        check.add_argument("--attestation", "-a", required=True, help="Attestation JSON file")
        check.add_argument("--signer", "-s", help="Trusted signer public key hex (default: config)")
        check.add_argument("--proof", "-p", required=True, help="Proof")
        check.add_argument("--inputs", "-i", required=True, help="Public inputs")
        check.add_argument("--vk", "-v", required=True, help="Verifying key")
        check.add_argument("--max-age", type=int, help="Freshness window in seconds (default: config)")

    def _register_tree_commands(self) -> None:
        """Register tree subcommands."""
        tree = self.subparsers.add_parser("tree", help="Commitment tree utilities")
        tree_sub = tree.add_subparsers(dest="subcommand")

        # tree root
        root = tree_sub.add_parser("root", help="Root over a file of hex commitments, one per line")
        root.add_argument("--commitments", "-i", required=True, help="Commitments file")
        root.add_argument("--depth", "-d", type=int, help="Tree depth (default: config)")

    def _register_config_commands(self) -> None:
        """Register config subcommands."""
        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")

        # config show
        config_sub.add_parser("show", help="Show current configuration")

        # config get
        get_cmd = config_sub.add_parser("get", help="Get a configuration value")
        get_cmd.add_argument("path", help="Dotted configuration path, e.g. vault.max_batch_size")

        # config validate
        config_sub.add_parser("validate", help="Validate configuration")

        # config schema
        config_sub.add_parser("schema", help="Export configuration schema")

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        from shieldpool.config import ConfigError, get_config_manager
        from shieldpool.hardening import ShieldedPoolError
        from shieldpool.observability import configure_logging

        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 0

        try:
            mgr = get_config_manager()
            if parsed.config:
                mgr.load_from_file(parsed.config)
            else:
                mgr.load_defaults()
            obs = mgr.config.observability
            configure_logging(obs.log_level.get(), obs.log_format.get())

            fmt = OutputFormat(parsed.format)
            result = self._dispatch(parsed)

            if result is not None:
                print(format_output(result, fmt))

            return 0

        except CLIError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return e.exit_code

        except (ShieldedPoolError, ConfigError, OSError, ValueError) as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return 1

    def _dispatch(self, args: argparse.Namespace) -> Any:
        """Dispatch command to handler."""
        cmd = args.command
        subcmd = getattr(args, "subcommand", None)

        handler_name = f"_handle_{cmd}_{subcmd}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {cmd} {subcmd or ''}")

        return handler(args)

    # Attestor handlers
    def _handle_attestor_keygen(self, args: argparse.Namespace) -> Any:
        from shieldpool.attestation import AttestationSigner
        signer = AttestationSigner.generate()
        keypair = {
            "private_key": signer.private_bytes().hex(),
            "public_key": signer.public_key_bytes.hex(),
        }
        if args.output:
            Path(args.output).write_text(json.dumps(keypair, indent=2) + "\n")
            return {"public_key": keypair["public_key"], "output": args.output}
        return keypair

    def _handle_attestor_sign(self, args: argparse.Namespace) -> Any:
        from shieldpool import groth16
        from shieldpool.attestation import AttestationSigner

        keypair = read_json(args.key)
        if "private_key" not in keypair:
            raise CLIError(f"Keypair file has no private_key: {args.key}")
        signer = AttestationSigner.from_private_bytes(bytes.fromhex(keypair["private_key"]))
        proof, inputs, vk = read_bytes(args.proof), read_bytes(args.inputs), read_bytes(args.vk)

        is_valid = groth16.verify(vk, proof, inputs)
        attestation = signer.attest(proof, inputs, vk, is_valid=is_valid, timestamp=args.timestamp)
        return {
            "is_valid": is_valid,
            "attestation": attestation.to_dict(),
            "encoded": attestation.to_bytes().hex(),
        }

    def _handle_attestor_check(self, args: argparse.Namespace) -> Any:
        from shieldpool.attestation import VerificationAttestation
        from shieldpool.config import get_config
        from shieldpool.keys import VerifyingKeyRecord
        from shieldpool.verifier import AttestationVerifier

        verifier_config = get_config().verifier
        signer = args.signer or verifier_config.trusted_signer_public_key.get()
        if not signer:
            raise CLIError("No trusted signer: pass --signer or set verifier.trusted_signer_public_key")
        max_age = args.max_age if args.max_age is not None else verifier_config.attestation_max_age_seconds.get()

        data = read_json(args.attestation)
        attestation = VerificationAttestation.from_dict(data.get("attestation", data))
        vk = read_bytes(args.vk)
        record = VerifyingKeyRecord(circuit_tag=bytes(32), version=0, key_bytes=vk, authority=bytes(32))

        verifier = AttestationVerifier(bytes.fromhex(signer), max_age_seconds=max_age, clock=time.time)
        if not verifier.verify(read_bytes(args.proof), read_bytes(args.inputs), record, attestation):
            raise CLIError("Attestation rejected", exit_code=2)
        return {"valid": True, "timestamp": attestation.timestamp}

    # Tree handlers
    def _handle_tree_root(self, args: argparse.Namespace) -> Any:
        from shieldpool.accumulator import CommitmentTree
        from shieldpool.config import get_config

        depth = args.depth or get_config().accumulator.depth.get()
        lines = Path(args.commitments).read_text().split()
        tree = CommitmentTree(depth=depth)
        for line in lines:
            tree.insert(bytes.fromhex(line[2:] if line.startswith("0x") else line))
        return {"root": tree.current_root.hex(), "leaves": tree.next_index, "depth": depth}

    # Config handlers
    def _handle_config_get(self, args: argparse.Namespace) -> Any:
        from shieldpool.config import get_config_manager
        mgr = get_config_manager()
        return {"path": args.path, "value": mgr.get(args.path)}

    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        from shieldpool.config import get_config_manager
        mgr = get_config_manager()
        return mgr.config.to_dict()

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        from shieldpool.config import get_config_manager
        mgr = get_config_manager()
        errors = mgr.validate()
        if errors:
            raise CLIError("Invalid configuration: " + "; ".join(errors))
        return {"valid": True, "errors": []}

    def _handle_config_schema(self, args: argparse.Namespace) -> Any:
        from shieldpool.config import get_config_manager
        mgr = get_config_manager()
        return mgr.export_schema()


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    cli = ShieldPoolCLI()
    return cli.run(argv)


if __name__ == "__main__":
    sys.exit(main())
