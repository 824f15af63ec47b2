#!/usr/bin/env python3
import os
import sys
import json
import signal
import logging
import argparse
import threading
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from web3 import Web3

from .artifacts import load_artifact, load_build_info
from .config import AppConfig, format_base_units, load_config, to_base_units
from .controller import SubmissionController
from .explorer import EtherscanVerifier
from .merkle import build_tree, export_proofs, load_claimants
from .models import DeployAction, Endpoint, Failure, TransferAction, VerificationReport
from .signer import LocalSigner
from .telegram_notifier import TelegramNotifier
from .ui import LaunchUI
from .verification import VerificationPoller


class GracefulExit(Exception):
    """Exception for graceful exits"""
    pass


def setup_logging(verbose: bool) -> logging.Logger:
    """Configure logging with appropriate level and format."""
    level = logging.DEBUG if verbose else logging.INFO

    # More detailed format for debug mode
    if verbose:
        formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s')
    else:
        formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove any existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(level)
    root_logger.addHandler(console_handler)

    # Set HTTP and web3 internals to WARNING level to reduce noise
    for noisy in ('urllib3', 'requests', 'web3'):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logging.getLogger('airdrop_launcher').setLevel(level)

    cli_logger = logging.getLogger('airdrop_launcher.cli')
    if verbose:
        cli_logger.debug("Debug logging enabled")
    return cli_logger


class CancelGuard:
    """First Ctrl-C stops before the next attempt, a second one exits immediately."""

    def __init__(self, logger: logging.Logger):
        self.event = threading.Event()
        self.logger = logger
        # Set once a submission starts so a hard exit can name its transaction
        self.controller: Optional[SubmissionController] = None

    def install(self) -> None:
        signal.signal(signal.SIGINT, self.handle)
        signal.signal(signal.SIGTERM, self.handle)

    def handle(self, signum, frame):
        if self.event.is_set():
            raise GracefulExit(self.exit_message())
        self.event.set()
        self.logger.warning("Interrupt received: no new attempt will start. A broadcast transaction cannot be recalled. Press Ctrl-C again to exit now.")

    def exit_message(self) -> str:
        tx_hash = self.controller.in_flight_tx if self.controller else None
        if not tx_hash:
            return "Received second interrupt signal"
        return (f"Received second interrupt signal while transaction {tx_hash} was in flight. "
                f"It may still be mined; check it on the explorer before submitting again.")


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='Airdrop contract deployment and funding wizard')
    parser.add_argument('--env-file', type=str, help='Extra environment file applied over .env')
    parser.add_argument('--debug', action='store_true', default=False, help='Enable debug logging')

    subparsers = parser.add_subparsers(dest='command', required=True)

    network_parent = argparse.ArgumentParser(add_help=False)
    network_parent.add_argument('--chain-id', type=int, help='Target chain id (defaults to CHAIN_ID from the environment)')
    network_parent.add_argument('--yes', action='store_true', default=False, help='Skip the typed confirmation')
    network_parent.add_argument('--notify', action='store_true', default=False, help='Send the outcome to the Telegram admin chat')

    deploy = subparsers.add_parser('deploy', parents=[network_parent], help='Deploy and verify the airdrop contract')
    deploy.add_argument('--claim-amount', type=str, help='Claim amount per user in whole tokens (prompted if omitted)')
    deploy.add_argument('--skip-verify', action='store_true', default=False, help='Do not submit source verification')

    transfer = subparsers.add_parser('transfer', parents=[network_parent], help='Transfer tokens, e.g. to fund the airdrop contract')
    transfer.add_argument('--to', required=True, help='Recipient address')
    transfer.add_argument('--amount', required=True, type=str, help='Amount in whole tokens')
    transfer.add_argument('--token', help="Token address (defaults to the network's airdrop token)")
    transfer.add_argument('--decimals', type=int, help="Token decimals (defaults to the network's token decimals)")

    merkle = subparsers.add_parser('merkle', help='Build the Merkle root for a claimant CSV')
    merkle.add_argument('claimants_csv', help="CSV file with 'address' and 'amount' columns")
    merkle.add_argument('--decimals', type=int, default=18, help='Token decimals used to convert amounts (default: 18)')
    merkle.add_argument('--proof-for', help='Print the proof for this claimant address')
    merkle.add_argument('--output', help='Write the root and all proofs to this JSON file')

    return parser.parse_args(argv)


def resolve_chain_id(args) -> int:
    chain_id = args.chain_id or os.getenv('CHAIN_ID')
    if not chain_id:
        raise ValueError("No chain selected. Pass --chain-id or set CHAIN_ID.")
    try:
        return int(chain_id)
    except ValueError:
        raise ValueError(f"Invalid chain id: {chain_id}")


def _notify(args, config: AppConfig, label: str, outcome, report: Optional[VerificationReport] = None,
            amount: Optional[int] = None) -> None:
    if args.notify:
        TelegramNotifier(config).notify_outcome(label, outcome, verification=report, amount_base_units=amount)


def run_deploy(args, config: AppConfig, ui: LaunchUI, logger: logging.Logger,
               guard: Optional[CancelGuard] = None) -> int:
    params = config.network
    ui.display_network(params)
    ui.display_assumptions()

    claim_text = args.claim_amount or ui.ask(f"❓ Enter the claim amount in {params.token_symbol} (e.g., '50')")
    try:
        claim_wei = to_base_units(claim_text, params.token_decimals)
    except ValueError as e:
        raise ValueError(f"Invalid input. Claim amount must be a number greater than 0. ({e})")

    artifact = load_artifact(config.explorer.artifacts_dir, config.explorer.contract_name)
    constructor_args = (
        Web3.to_checksum_address(params.token_address),
        Web3.to_checksum_address(params.bas_registry_address),
        params.human_schema_id,
        claim_wei,
    )
    action = DeployAction(artifact=artifact, constructor_args=constructor_args)

    ui.display_review([
        ("Deploying", artifact.contract_name),
        ("To Network", params.network_name),
        ("Claim Amount", f"{claim_text} {params.token_symbol} ({claim_wei} wei)"),
    ])
    if not args.yes and not ui.confirm_keyword('deploy', 'deployment'):
        ui.console.print("Deployment cancelled by user.")
        return 0

    signer = LocalSigner(config.wallet.private_key)
    logger.info(f"Deploying {artifact.contract_name} from {signer.address}")
    controller = SubmissionController.from_settings(config.retry)
    if guard:
        guard.controller = controller
    outcome = controller.submit(
        action,
        Endpoint.from_urls(params.rpc_urls),
        signer,
        max_retries_per_endpoint=config.retry.max_retries_per_endpoint,
        retry_delay=config.retry.retry_delay_seconds,
        cancel_event=guard.event if guard else None,
    )

    if isinstance(outcome, Failure):
        ui.display_failure(outcome)
        _notify(args, config, 'deploy', outcome)
        return 1

    contract_address = outcome.contract_address
    ui.display_success(outcome.tx_hash, params.tx_url(outcome.tx_hash))
    ui.console.print(f"✅ Contract deployed to address: [bold cyan]{contract_address}[/]")

    report = None
    if args.skip_verify:
        logger.info("Skipping source verification (--skip-verify)")
    elif not config.explorer.api_key:
        logger.warning("No EXPLORER_API_KEY/BSCSCAN_API_KEY configured; skipping source verification")
    else:
        verifier = EtherscanVerifier(
            api_key=config.explorer.api_key,
            artifact=artifact,
            build_info=load_build_info(artifact),
            api_url=params.explorer_api_url,
            chain_id=params.chain_id,
        )
        report = VerificationPoller(verifier).verify(
            contract_address,
            constructor_args,
            max_attempts=config.retry.verification_max_attempts,
            delay_between_attempts=config.retry.verification_delay_seconds,
        )
        ui.display_verification(report, params.address_url(contract_address))

    ui.display_funding_reminder(contract_address, params.token_symbol)
    _notify(args, config, 'deploy', outcome, report=report)
    return 0


def run_transfer(args, config: AppConfig, ui: LaunchUI, logger: logging.Logger,
                 guard: Optional[CancelGuard] = None) -> int:
    params = config.network
    token_address = args.token or params.token_address
    decimals = args.decimals if args.decimals is not None else params.token_decimals

    if not Web3.is_address(token_address):
        raise ValueError(f"Invalid token address: {token_address}")
    if not Web3.is_address(args.to):
        raise ValueError(f"Invalid recipient address: {args.to}")

    amount = to_base_units(args.amount, decimals)
    action = TransferAction(
        token_address=Web3.to_checksum_address(token_address),
        recipient=Web3.to_checksum_address(args.to),
        amount_base_units=amount,
    )

    ui.display_review([
        ("Action", "Token transfer"),
        ("Network", params.network_name),
        ("Token", action.token_address),
        ("Recipient", action.recipient),
        ("Amount", f"{format_base_units(amount, decimals)} ({amount} base units)"),
    ])
    if not args.yes and not ui.confirm_keyword('transfer', 'the transfer'):
        ui.console.print("Transfer cancelled by user.")
        return 0

    signer = LocalSigner(config.wallet.private_key)
    logger.info(f"Transferring {amount} base units of {action.token_address} from {signer.address}")
    controller = SubmissionController.from_settings(config.retry)
    if guard:
        guard.controller = controller
    outcome = controller.submit(
        action,
        Endpoint.from_urls(params.rpc_urls),
        signer,
        max_retries_per_endpoint=config.retry.max_retries_per_endpoint,
        retry_delay=config.retry.retry_delay_seconds,
        cancel_event=guard.event if guard else None,
    )
    _notify(args, config, 'transfer', outcome, amount=amount)

    if isinstance(outcome, Failure):
        ui.display_failure(outcome)
        return 1
    ui.display_success(outcome.tx_hash, params.tx_url(outcome.tx_hash))
    return 0


def run_merkle(args, ui: LaunchUI, logger: logging.Logger) -> int:
    claimants = load_claimants(args.claimants_csv, args.decimals)
    tree = build_tree(claimants)
    total = sum(c.amount for c in claimants)
    ui.display_merkle(tree.hex_root, len(claimants), format_base_units(total, args.decimals), "tokens")

    if args.proof_for:
        wanted = args.proof_for.lower()
        match = next((c for c in claimants if c.address.lower() == wanted), None)
        if match is None:
            raise ValueError(f"{args.proof_for} is not in {args.claimants_csv}")
        ui.console.print(f"\n--- Proof for {match.address} ---")
        ui.console.print(f"Amount (base units): {match.amount}")
        ui.console.print(json.dumps(tree.hex_proof(match.leaf)))

    if args.output:
        path = export_proofs(tree, claimants, args.output)
        logger.info(f"Proofs written to {path}")
    return 0


def main(argv=None):
    """Main entry point for the launcher CLI."""
    args = parse_args(argv)

    try:
        if args.env_file and Path(args.env_file).exists():
            load_dotenv(args.env_file, override=True)

        debug = args.debug or os.getenv('DEBUG', 'false').lower() == 'true'
        logger = setup_logging(debug)
        ui = LaunchUI()

        if args.command == 'merkle':
            sys.exit(run_merkle(args, ui, logger))

        ui.display_welcome()
        config = load_config(resolve_chain_id(args), env_file=args.env_file)
        guard = CancelGuard(logger)
        guard.install()

        if args.command == 'deploy':
            exit_code = run_deploy(args, config, ui, logger, guard)
        else:
            exit_code = run_transfer(args, config, ui, logger, guard)
        sys.exit(exit_code)

    except GracefulExit as e:
        if 'logger' in locals():
            logger.warning(str(e))
        print(f"\nGracefully exiting: {str(e)}")
        sys.exit(1)
    except ValueError as e:
        # Since logger might not be defined in case of early failure
        if 'logger' in locals():
            logger.error(f"Validation error: {e}")
        print(f"Error: {str(e)}")
        sys.exit(1)
    except Exception as e:
        if 'logger' in locals():
            logger.error(f"Unexpected error: {e}", exc_info=True)
        print(f"Unexpected error: {str(e)}")
        sys.exit(1)


if __name__ == "__main__":
    main()
