"""Command-line interface for the inscriber.

The CLI is a thin façade over :mod:`vermilion_inscriber.ordinals.workflows`:
``estimate`` prints fee figures, ``inscribe`` builds and signs (and optionally
broadcasts) a commit/reveal pair with an in-process key, and ``address`` shows
the addresses that key controls.
"""

from __future__ import annotations

import argparse
import json
import logging
import mimetypes
import os
import sys
from pathlib import Path
from typing import Any, Sequence

from bitcoinutils.script import Script

from .addresses import address_to_script_pub_key
from .config import ConfigurationError, ProviderConfig, load_provider_config, set_default_config_path
from .errors import InscriptionError, PartialBroadcast
from .fees import format_floors_for_log, select_fee_rate
from .network import AddressType, NetworkParams, get_network
from .ordinals.inscriptions import Inscription
from .ordinals.workflows import (
    broadcast_inscription,
    create_inscriptions,
    estimate_inscription_fees,
    write_receipt,
)
from .provider_client import MempoolClient, ProviderError, ProviderTransportError, format_provider_hint
from .wallets import LocalKeyWallet, WalletCapability

logger = logging.getLogger(__name__)

ENV_WALLET_SECRET = "VERMILION_WALLET_SECRET"
DEFAULT_TEXT_CONTENT_TYPE = "text/plain;charset=utf-8"
# Stand-in destination for estimates when none is given: a taproot output.
PLACEHOLDER_DESTINATION = Script(["OP_1", "00" * 32])


class CLIError(RuntimeError):
    """Raised when CLI arguments are invalid."""


def _add_network_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--network", help="mainnet, testnet, testnet4, signet or regtest")
    parser.add_argument("--api-url", help="Provider REST endpoint (overrides VERMILION_API_URL)")


def _add_content_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--file", action="append", default=[], help="File to inscribe (repeatable)")
    parser.add_argument("--text", action="append", default=[], help="Text to inscribe (repeatable)")
    parser.add_argument("--content-type", help="Media type; guessed from file names when omitted")
    parser.add_argument("--content-encoding", help="Content encoding tag, e.g. br or gzip")
    parser.add_argument("--metaprotocol", help="Metaprotocol tag")
    parser.add_argument("--delegate", help="Delegate inscription id (<txid>i<index>)")
    parser.add_argument("--postage", type=int, default=546, help="Sats per inscription output")
    parser.add_argument("--fee-rate", type=float, help="Fee rate in sat/vB; fetched from the provider when omitted")


def _add_wallet_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--secret-hex",
        help=f"Wallet private key as hex (defaults to ${ENV_WALLET_SECRET})",
    )
    parser.add_argument(
        "--address-type",
        choices=[item.value for item in AddressType],
        default=AddressType.P2TR.value,
        help="Payment address type of the local wallet",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vermilion", description="Bitcoin ordinals inscriber")
    parser.add_argument("--config", help="Path to a YAML config file (default ~/.vermilion.yaml)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    estimate_parser = subparsers.add_parser("estimate", help="Estimate reveal size and fees")
    _add_network_args(estimate_parser)
    _add_content_args(estimate_parser)
    estimate_parser.add_argument(
        "--address-type",
        choices=[item.value for item in AddressType],
        default=AddressType.P2TR.value,
        help="Payment address type used to price commit inputs",
    )
    estimate_parser.add_argument("--destination", help="Address receiving the inscriptions")

    inscribe_parser = subparsers.add_parser("inscribe", help="Build and sign a commit/reveal pair")
    _add_network_args(inscribe_parser)
    _add_content_args(inscribe_parser)
    _add_wallet_args(inscribe_parser)
    inscribe_parser.add_argument("--destination", help="Address receiving the inscriptions")
    inscribe_parser.add_argument(
        "--exclude", action="append", default=[], help="txid:vout to leave unspent (repeatable)"
    )
    inscribe_parser.add_argument(
        "--no-custom-signing",
        action="store_true",
        help="Treat the wallet as unable to sign custom script paths",
    )
    inscribe_parser.add_argument(
        "--no-key-path",
        action="store_true",
        help="Treat the wallet as unable to sign taproot key-path inputs",
    )
    inscribe_parser.add_argument("--broadcast", action="store_true", help="Broadcast after signing")
    inscribe_parser.add_argument(
        "--sequential",
        action="store_true",
        help="Broadcast commit then reveal instead of submitting a package",
    )
    inscribe_parser.add_argument("--receipt", type=Path, help="Write a JSON receipt to this path")

    address_parser = subparsers.add_parser("address", help="Show the local wallet's addresses")
    _add_network_args(address_parser)
    _add_wallet_args(address_parser)

    return parser


def _load_config(args: argparse.Namespace) -> tuple[ProviderConfig, NetworkParams]:
    set_default_config_path(args.config)
    config = load_provider_config(
        overrides={"network": args.network, "endpoint": args.api_url}
    )
    return config, get_network(config.network)


def _guess_content_type(path: Path) -> str:
    guessed, _ = mimetypes.guess_type(path.name)
    return guessed or "application/octet-stream"


def _collect_inscriptions(args: argparse.Namespace) -> list[Inscription]:
    tags: dict[str, Any] = {
        "content_encoding": args.content_encoding,
        "metaprotocol": args.metaprotocol,
        "delegate": args.delegate,
        "postage": args.postage,
    }
    inscriptions = []
    for raw_path in args.file:
        path = Path(raw_path).expanduser()
        try:
            content = path.read_bytes()
        except OSError as exc:
            raise CLIError(f"Cannot read {path}: {exc}") from exc
        inscriptions.append(
            Inscription(content=content, content_type=args.content_type or _guess_content_type(path), **tags)
        )
    for text in args.text:
        inscriptions.append(
            Inscription(content=text.encode("utf-8"), content_type=args.content_type or DEFAULT_TEXT_CONTENT_TYPE, **tags)
        )
    if not inscriptions and args.delegate:
        inscriptions.append(Inscription(content_type=args.content_type, **tags))
    if not inscriptions:
        raise CLIError("Provide at least one --file, --text or --delegate")
    return inscriptions


def _load_wallet(args: argparse.Namespace, params: NetworkParams, capability: WalletCapability | None = None) -> LocalKeyWallet:
    secret = args.secret_hex or os.environ.get(ENV_WALLET_SECRET)
    if not secret:
        raise CLIError(f"Provide --secret-hex or set {ENV_WALLET_SECRET}")
    return LocalKeyWallet.from_secret_hex(
        secret, params, address_type=AddressType(args.address_type), capability=capability
    )


def _fee_rate(args: argparse.Namespace, client: MempoolClient | None) -> float:
    if args.fee_rate is not None:
        if args.fee_rate <= 0:
            raise CLIError("--fee-rate must be positive")
        return args.fee_rate
    if client is None:
        raise CLIError("--fee-rate is required when no provider is available")
    selection = select_fee_rate(
        client,
        min_fee_rate_satvb_floor=client.config.min_fee_rate_satvb,
        fee_tier=client.config.fee_tier,
    )
    logger.info(
        "Using %.2f sat/vB from %s (floors: %s)",
        selection.fee_rate_sat_vb,
        selection.source,
        format_floors_for_log(selection.floors_applied),
    )
    return selection.fee_rate_sat_vb


def _commit_broadcaster(client: MempoolClient):
    def broadcast_commit(commit_hex: str, commit_txid: str) -> None:
        client.broadcast(commit_hex)
        logger.info("Commit %s broadcast before signing the reveal", commit_txid)

    return broadcast_commit


def cmd_estimate(args: argparse.Namespace) -> None:
    config, params = _load_config(args)
    inscriptions = _collect_inscriptions(args)
    destination = (
        address_to_script_pub_key(args.destination, params) if args.destination else PLACEHOLDER_DESTINATION
    )
    client = MempoolClient(config, params) if args.fee_rate is None else None
    fee_rate = _fee_rate(args, client)
    estimate = estimate_inscription_fees(
        inscriptions, destination, fee_rate, AddressType(args.address_type), params
    )
    estimate["fee_rate_sat_vb"] = fee_rate
    estimate["inscriptions"] = len(inscriptions)
    print(json.dumps(estimate, indent=2))


def cmd_inscribe(args: argparse.Namespace) -> None:
    config, params = _load_config(args)
    inscriptions = _collect_inscriptions(args)
    capability = WalletCapability(
        supports_custom_address_signing=not args.no_custom_signing,
        supports_key_path_signing=not args.no_key_path,
    )
    wallet = _load_wallet(args, params, capability)
    client = MempoolClient(config, params)
    fee_rate = _fee_rate(args, client)

    on_commit_signed = _commit_broadcaster(client) if args.broadcast and args.sequential else None

    result = create_inscriptions(
        inscriptions,
        wallet,
        params,
        client,
        fee_rate=fee_rate,
        destination_address=args.destination,
        exclude_outpoints=args.exclude,
        on_commit_signed=on_commit_signed,
    )
    summary = result.summary()
    if args.broadcast:
        summary["broadcast"] = broadcast_inscription(client, result, package=not args.sequential)
    else:
        summary["commit_tx_hex"] = result.commit_tx_hex
        summary["reveal_tx_hex"] = result.reveal_tx_hex
    if args.receipt:
        write_receipt(args.receipt, result, {"network": params.name, "broadcast": bool(args.broadcast)})
        logger.info("Receipt written to %s", args.receipt)
    print(json.dumps(summary, indent=2))


def cmd_address(args: argparse.Namespace) -> None:
    _config, params = _load_config(args)
    wallet = _load_wallet(args, params)
    print(
        json.dumps(
            {
                "network": params.name,
                "address_type": wallet.address_type.value,
                "payment_address": wallet.payment_address,
                "ordinals_address": wallet.ordinals_address,
                "public_key": wallet.payment_public_key,
            },
            indent=2,
        )
    )


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)
    try:
        if args.command == "estimate":
            cmd_estimate(args)
        elif args.command == "inscribe":
            cmd_inscribe(args)
        elif args.command == "address":
            cmd_address(args)
        else:  # pragma: no cover - argparse enforces choices
            raise CLIError(f"Unknown command: {args.command}")
    except KeyboardInterrupt:  # pragma: no cover - interactive use
        logger.info("Interrupted by user")
    except PartialBroadcast as exc:
        parser.exit(
            2,
            f"error: {exc}\nThe commit {exc.commit_txid} is on the network; rebuild the reveal from it.\n",
        )
    except (ProviderError, ProviderTransportError) as exc:
        hint = format_provider_hint(exc)
        parser.exit(1, f"error: {exc}\n" + (f"hint: {hint}\n" if hint else ""))
    except InscriptionError as exc:
        cause = exc.__cause__
        hint = format_provider_hint(cause) if isinstance(cause, (ProviderError, ProviderTransportError)) else None
        parser.exit(1, f"error: {exc}\n" + (f"hint: {hint}\n" if hint else ""))
    except (CLIError, ConfigurationError, ValueError) as exc:
        parser.exit(1, f"error: {exc}\n")


if __name__ == "__main__":
    main(sys.argv[1:])
