from typing import Iterable, Tuple

from rich.align import Align
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from ..config import NetworkParams
from ..models import VerificationReport
from .base_ui import BaseUI


class LaunchUI(BaseUI):
    def display_welcome(self):
        """Display welcome banner."""
        title = Text()
        title.append("🚀 AIRDROP ", style="bold yellow")
        title.append("LAUNCH ", style="bold magenta")
        title.append("WIZARD", style="bold cyan")

        self.console.print(Panel(
            Align.center(title),
            border_style="bright_blue",
            padding=(1, 2)
        ))

    def display_network(self, params: NetworkParams):
        """Display the deployment parameters for the selected chain."""
        table = Table(show_header=False, border_style="bright_blue")
        table.add_column("Parameter", style="cyan", justify="right")
        table.add_column("Value", style="green")

        table.add_row("Network", f"{params.network_name} (ChainID: {params.chain_id})")
        table.add_row(f"{params.token_symbol} Token", params.token_address)
        table.add_row("BAS Registry", params.bas_registry_address)
        table.add_row("Human Schema ID", params.human_schema_id)
        for position, url in enumerate(params.rpc_urls, start=1):
            table.add_row(f"RPC #{position}", url)

        self.console.print(Panel(
            table,
            title=f"[bold yellow]Deployment Configuration for {params.network_name}[/]",
            border_style="bright_blue"
        ))

    def display_review(self, rows: Iterable[Tuple[str, str]]):
        """Display the transaction about to be sent."""
        table = Table(show_header=False, border_style="yellow")
        table.add_column("Field", style="cyan", justify="right")
        table.add_column("Value", style="bright_white")
        for label, value in rows:
            table.add_row(label, value)

        self.console.print(Panel(
            table,
            title="[bold yellow]Review Transaction[/]",
            border_style="yellow"
        ))

    def display_verification(self, report: VerificationReport, address_url: str):
        if report.state.is_verified:
            self.console.print(Panel(
                f"[bold green]{report.state.value}[/] after {report.attempts} attempt(s)\n"
                f"[blue]{address_url}#code[/]",
                title="[bold green]Verification[/]",
                border_style="green"
            ))
            return

        body = f"[bold red]{report.state.value}[/] after {report.attempts} attempt(s)\n"
        if report.last_error:
            body += f"Last error: {report.last_error}\n"
        for hint in report.hints:
            body += f"[yellow]{hint}[/]\n"
        body += f"Please verify the contract manually: [blue]{address_url}#code[/]"
        self.console.print(Panel(body, title="[bold red]Verification[/]", border_style="red"))

    def display_funding_reminder(self, contract_address: str, token_symbol: str):
        self.console.print(Panel(
            f"[bold]Transfer your {token_symbol} tokens to this new contract address:[/]\n"
            f"[bold cyan]{contract_address}[/]\n\n"
            f"Run: airdrop-launcher transfer --to {contract_address} --amount <AMOUNT>",
            title="[bold red]CRITICAL: Don't forget to fund the contract![/]",
            border_style="red"
        ))

    def display_merkle(self, root: str, claimant_count: int, total: str, token_symbol: str):
        table = Table(show_header=False, border_style="bright_magenta")
        table.add_column("Field", style="cyan", justify="right")
        table.add_column("Value", style="bright_white")
        table.add_row("Claimants", f"{claimant_count:,}")
        table.add_row("Total", f"{total} {token_symbol}")
        table.add_row("Merkle root", root)

        self.console.print(Panel(
            table,
            title="[bold magenta]Merkle Tree[/]",
            subtitle="[cyan]Use the root in the contract constructor or updateClaimPeriod[/]",
            border_style="bright_magenta"
        ))
