from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from ..models import Failure


class BaseUI:
    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def display_welcome(self):
        """Abstract method for welcome screen."""
        raise NotImplementedError

    def display_assumptions(self):
        """Display Know Your Assumptions (KYA) checklist."""
        assumptions = [
            ("🔐 Wallet", "The deployer key in PRIVATE_KEY holds enough native coin for gas"),
            ("📊 Amounts", "Amounts are entered in whole tokens and converted to base units"),
            ("⚡ Network", "RPC endpoints are tried in order; later ones are fallbacks"),
            ("⛓️ Finality", "Deployments wait for 5 confirmations, transfers for 1"),
            ("🔍 Explorer", "Source verification may take a few minutes to index"),
            ("🔒 Security", "Double-check all transaction parameters before confirming"),
        ]

        table = Table(
            show_header=True,
            header_style="bold yellow",
            border_style="bright_blue",
            title="[bold red]Pre-flight Checklist[/]"
        )
        table.add_column("⚠️ Check", style="cyan")
        table.add_column("📝 Description", style="bright_white")

        for check, desc in assumptions:
            table.add_row(check, desc)

        panel = Panel(
            table,
            title="[bold red]KNOW YOUR ASSUMPTIONS (KYA)[/]",
            border_style="red"
        )

        self.console.print("\n")
        self.console.print(panel)
        self.console.print("\n")

    def ask(self, question: str, default: Optional[str] = None) -> str:
        return Prompt.ask(question, console=self.console, default=default)

    def confirm_keyword(self, keyword: str, action_text: str) -> bool:
        """Require the operator to type a keyword to proceed."""
        answer = Prompt.ask(
            f"   Type '{keyword}' to confirm and start {action_text}",
            console=self.console,
            default="",
            show_default=False,
        )
        return answer.strip().lower() == keyword

    def display_error(self, message: str):
        """Display error message."""
        panel = Panel(
            f"[bold red]Error: {message}[/]",
            title="[bold red]Error[/]",
            border_style="red"
        )
        self.console.print("\n")
        self.console.print(panel)
        self.console.print("\n")

    def display_success(self, tx_hash: str, explorer_url: str):
        """Display success message."""
        panel = Panel(
            f"""[bold green]Transaction confirmed![/]
[bright_white]Transaction hash: [cyan]{tx_hash}[/]
[bright_white]Explorer URL: [blue]{explorer_url}[/]""",
            title="[bold green]Success[/]",
            border_style="green"
        )
        self.console.print("\n")
        self.console.print(panel)
        self.console.print("\n")

    def display_failure(self, outcome: Failure):
        """Show every endpoint tried with its final error so the operator can follow up."""
        table = Table(show_header=True, header_style="bold red", border_style="red")
        table.add_column("#", justify="right")
        table.add_column("Endpoint", style="cyan")
        table.add_column("Class", style="yellow")
        table.add_column("Last error", style="bright_white")

        for position, err in enumerate(outcome.last_errors, start=1):
            table.add_row(str(position), err.endpoint.url, err.kind.value, err.message)

        subtitle = f"{len(outcome.attempts)} attempt(s), class {outcome.classification.value}"
        self.console.print("\n")
        self.console.print(Panel(
            table,
            title="[bold red]Transaction failed on all endpoints[/]",
            subtitle=subtitle,
            border_style="red"
        ))
        if outcome.hint:
            self.console.print(f"[yellow]{outcome.hint}[/]")
        if outcome.pending_tx_hash:
            self.console.print(
                f"[bold yellow]⚠️ Transaction {outcome.pending_tx_hash} was broadcast and may still be mined. "
                f"Check it before submitting again.[/]"
            )
        self.console.print("\n")
