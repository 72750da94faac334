#!/usr/bin/env python3
"""Interactive chat CLI for the interview research assistant."""

import asyncio
import sys

import httpx
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt

from ragchat.client import ChatSession, ChatState
from ragchat.client.state import ERROR_MESSAGE_PREFIX
from ragchat.models.chat import StreamEvent


class ChatCLI:
    """Interactive streaming chat against a running ragchat server."""

    def __init__(self, base_url: str = "http://localhost:8000"):
        """Initialize chat CLI."""
        self.base_url = base_url
        self.console = Console()
        self.session = self._new_session()

    def _new_session(self) -> ChatSession:
        return ChatSession(self.base_url, on_event=self._render_event)

    async def start(self) -> None:
        """Start the interactive chat session."""
        self.console.print(
            Panel.fit(
                "[bold blue]🔎 ragchat - Interview Research Assistant[/bold blue]\n"
                "Ask questions about the interview collection.\n"
                "Commands: /help, /clear, /quit",
                border_style="blue",
            )
        )

        if not await self._test_connection():
            self.console.print(f"[red]❌ Cannot connect to the service at {self.base_url}.[/red]")
            await self.session.aclose()
            return

        self.console.print("[green]✅ Connected to ragchat[/green]\n")

        try:
            while True:
                user_input = await asyncio.to_thread(Prompt.ask, "\n[bold cyan]You[/bold cyan]")

                if user_input.lower() in ["/quit", "/exit", "quit", "exit"]:
                    break
                elif user_input.lower() == "/help":
                    self._show_help()
                    continue
                elif user_input.lower() == "/clear":
                    await self.session.aclose()
                    self.session = self._new_session()
                    self.console.print("[yellow]🔄 Conversation cleared[/yellow]")
                    continue
                elif user_input.strip() == "":
                    continue

                self.console.print("\n[bold green]🤖 Assistant[/bold green]")
                reply = await self.session.send(user_input)
                self.console.print()
                if reply is not None and reply.content.startswith(ERROR_MESSAGE_PREFIX):
                    self.console.print(f"❌ {reply.content}", style="red", markup=False)
                self._show_sources(self.session.state)

        except (KeyboardInterrupt, EOFError):
            pass
        finally:
            self.console.print("\n[yellow]👋 Goodbye![/yellow]")
            await self.session.aclose()

    async def _test_connection(self) -> bool:
        """Test connection to the service."""
        try:
            response = await self.session.client.get("/health")
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    def _render_event(self, event: StreamEvent, state: ChatState) -> None:
        if event.type == "text":
            self.console.print(event.data, end="", markup=False, highlight=False)
        elif event.type == "tool_call" and event.data["status"] == "executing":
            query = (event.data.get("input") or {}).get("query", "")
            self.console.print(f"\n[dim]🔍 Searching interviews: {query}[/dim]")
        elif event.type == "tool_result":
            summary = event.data.get("summary") or {}
            if summary.get("hasError"):
                self.console.print("[red]⚠️  Search failed[/red]")
            else:
                self.console.print(f"[dim]📄 {summary.get('resultsCount', 0)} passages found[/dim]")
        elif event.type == "error":
            self.console.print(f"\n[red]❌ {event.data.get('message')}[/red]")

    def _show_sources(self, state: ChatState) -> None:
        """List the interviews cited by this turn's searches."""
        calls = list(state.active_tool_calls.values()) + state.completed_tool_calls
        interview_ids: list[str] = []
        for call in calls:
            for result in (call.result or {}).get("results", []):
                interview_id = result.get("interview_id")
                if interview_id and interview_id not in interview_ids:
                    interview_ids.append(interview_id)

        if interview_ids:
            self.console.print(f"[dim]Sources: {', '.join(interview_ids)}[/dim]")

    def _show_help(self) -> None:
        """Show help information."""
        help_text = """
[bold]Available Commands:[/bold]
• /help - Show this help message
• /clear - Clear the conversation and start over
• /quit or /exit - Exit the chat

[bold]Example Questions:[/bold]
1. "What themes come up most often around onboarding?"
2. "What did participant P-07 say about pricing?"
3. "Find quotes about switching from a competitor"

[bold]Tips:[/bold]
• The assistant searches the interviews itself and may search several times
• Name a participant or interview to narrow the search
        """

        self.console.print(Panel(help_text.strip(), title="[cyan]❓ Help[/cyan]", border_style="cyan"))


def main():
    """Main entry point for the chat CLI."""
    base_url = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8000"

    chat = ChatCLI(base_url)
    asyncio.run(chat.start())


if __name__ == "__main__":
    main()
