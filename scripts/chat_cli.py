#!/usr/bin/env python3
"""Interactive chat CLI for the toolchat service."""

import json
import sys

import httpx
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table


class ChatCLI:
    """Interactive chat interface that renders replies as they stream in."""

    def __init__(self, base_url: str = "http://localhost:8000"):
        """Initialize chat CLI."""
        self.base_url = base_url
        self.conversation_id: str | None = None
        self.tool_ids: list[str] = []
        self.console = Console()
        self.client = httpx.Client(timeout=httpx.Timeout(60.0, read=None))

    def start(self) -> None:
        """Start the interactive chat session."""
        self.console.print(
            Panel.fit(
                "[bold blue]toolchat - Interactive Chat[/bold blue]\n"
                "Type your messages to chat with the current provider.\n"
                "Commands: /help, /new, /list, /open, /provider, /tools, /use, /servers, /reinit, /quit",
                border_style="blue",
            )
        )

        if not self._test_connection():
            self.console.print(f"[red]Cannot connect to the service at {self.base_url}.[/red]")
            return

        self.console.print("[green]Connected to toolchat service[/green]\n")

        try:
            while True:
                user_input = Prompt.ask("\n[bold cyan]You[/bold cyan]").strip()

                if not user_input:
                    continue
                if user_input.startswith("/"):
                    if not self._handle_command(user_input):
                        break
                    continue

                self._send_message(user_input)

        except (KeyboardInterrupt, EOFError):
            pass
        finally:
            self.console.print("\n[yellow]Goodbye![/yellow]")
            self.client.close()

    def _handle_command(self, line: str) -> bool:
        """Run a slash command. Returns False when the session should end."""
        command, _, argument = line.partition(" ")
        argument = argument.strip()

        match command.lower():
            case "/quit" | "/exit":
                return False
            case "/help":
                self._show_help()
            case "/new":
                self._new_conversation(argument or None)
            case "/list":
                self._list_conversations()
            case "/open":
                self._open_conversation(argument)
            case "/provider":
                self._provider(argument)
            case "/tools":
                self._list_tools()
            case "/use":
                self.tool_ids = argument.split() if argument else []
                active = ", ".join(self.tool_ids) if self.tool_ids else "none"
                self.console.print(f"[yellow]Active tools: {active}[/yellow]")
            case "/servers":
                self._list_servers()
            case "/reinit":
                self._reinitialize(argument)
            case _:
                self.console.print(f"[red]Unknown command: {command}[/red] (try /help)")
        return True

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response | None:
        try:
            response = self.client.request(method, f"{self.base_url}{path}", **kwargs)
        except httpx.HTTPError as e:
            self.console.print(f"[red]Connection error: {e}[/red]")
            return None
        if response.is_error:
            self.console.print(f"[red]API Error: {response.status_code} - {_detail(response)}[/red]")
            return None
        return response

    def _test_connection(self) -> bool:
        """Test connection to the service."""
        try:
            response = self.client.get(f"{self.base_url}/health")
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    def _new_conversation(self, title: str | None = None) -> bool:
        response = self._request("POST", "/conversations", json={"title": title})
        if response is None:
            return False
        conversation = response.json()
        self.conversation_id = conversation["id"]
        self.console.print(
            f"[yellow]New conversation {conversation['title']} "
            f"({conversation['provider']}, {conversation['model']})[/yellow]"
        )
        return True

    def _list_conversations(self) -> None:
        response = self._request("GET", "/conversations")
        if response is None:
            return

        table = Table(title="Conversations")
        table.add_column("ID", style="dim")
        table.add_column("Title")
        table.add_column("Provider")
        table.add_column("Messages", justify="right")
        table.add_column("Updated")
        for conversation in response.json():
            marker = " *" if conversation["id"] == self.conversation_id else ""
            table.add_row(
                conversation["id"],
                conversation["title"] + marker,
                conversation["provider"],
                str(conversation["message_count"]),
                conversation["updated_at"][:19].replace("T", " "),
            )
        self.console.print(table)

    def _open_conversation(self, conversation_id: str) -> None:
        if not conversation_id:
            self.console.print("[red]Usage: /open <conversation id>[/red]")
            return
        response = self._request("GET", f"/conversations/{conversation_id}")
        if response is None:
            return

        conversation = response.json()
        self.conversation_id = conversation["id"]
        self.console.print(f"[yellow]Opened {conversation['title']}[/yellow]")
        for message in conversation["messages"]:
            if message["role"] == "user":
                self.console.print(f"\n[bold cyan]You:[/bold cyan] {message['content']}")
            else:
                self._display_response(message)

    def _provider(self, name: str) -> None:
        if name:
            response = self._request("PUT", "/providers/current", json={"name": name})
            if response is not None:
                provider = response.json()
                self.console.print(f"[yellow]Switched to {provider['name']} ({provider['model']})[/yellow]")
                self.console.print("[dim]New conversations use this provider; /new to start one.[/dim]")
            return

        response = self._request("GET", "/providers")
        if response is None:
            return
        table = Table(title="Providers")
        table.add_column("Name")
        table.add_column("Type")
        table.add_column("Model")
        table.add_column("Enabled")
        for provider in response.json():
            name = f"[bold]{provider['name']} *[/bold]" if provider["current"] else provider["name"]
            table.add_row(name, provider["type"], provider["model"], "yes" if provider["enabled"] else "no")
        self.console.print(table)

    def _list_tools(self) -> None:
        response = self._request("GET", "/tools")
        if response is None:
            return
        table = Table(title="Tools")
        table.add_column("ID")
        table.add_column("Origin")
        table.add_column("Description")
        for tool in response.json():
            tool_id = tool["id"] if tool["available"] else f"[dim]{tool['id']} (not configured)[/dim]"
            if tool["id"] in self.tool_ids:
                tool_id = f"[green]{tool_id}[/green]"
            table.add_row(tool_id, tool["origin"], tool["description"])
        self.console.print(table)
        self.console.print("[dim]Activate tools with /use <id> [<id> ...][/dim]")

    def _list_servers(self) -> None:
        response = self._request("GET", "/mcp/servers")
        if response is None:
            return
        table = Table(title="MCP servers")
        table.add_column("Name")
        table.add_column("Transport")
        table.add_column("State")
        table.add_column("Tools / error")
        for server in response.json():
            state_style = {"initialized": "green", "error": "red", "initializing": "yellow"}.get(server["state"], "dim")
            details = server["error"] or ", ".join(server["tools"])
            table.add_row(
                server["name"], server["transport"], f"[{state_style}]{server['state']}[/{state_style}]", details
            )
        self.console.print(table)

    def _reinitialize(self, name: str) -> None:
        if not name:
            self.console.print("[red]Usage: /reinit <server name>[/red]")
            return
        self.console.print(f"[dim]Reconnecting {name}...[/dim]")
        response = self._request("POST", f"/mcp/servers/{name}/reinitialize")
        if response is None:
            return
        server = response.json()
        if server["state"] == "initialized":
            self.console.print(f"[green]{name} initialized with {len(server['tools'])} tools[/green]")
        else:
            self.console.print(f"[red]{name}: {server['state']} {server['error'] or ''}[/red]")

    def _send_message(self, message: str) -> None:
        """Send a message and print the reply fragments as they arrive."""
        if self.conversation_id is None and not self._new_conversation():
            return

        payload = {"message": message, "tool_ids": self.tool_ids or None}
        url = f"{self.base_url}/conversations/{self.conversation_id}/messages"

        self.console.print("\n[bold green]Assistant:[/bold green] ", end="")
        try:
            with self.client.stream("POST", url, json=payload) as response:
                if response.is_error:
                    response.read()
                    self.console.print(f"\n[red]API Error: {response.status_code} - {_detail(response)}[/red]")
                    return
                for line in response.iter_lines():
                    if line:
                        self._handle_event(json.loads(line))
        except KeyboardInterrupt:
            self._request("POST", f"/conversations/{self.conversation_id}/cancel")
            self.console.print("\n[yellow]Generation cancelled[/yellow]")
        except httpx.HTTPError as e:
            self.console.print(f"\n[red]Connection error: {e}[/red]")

    def _handle_event(self, event: dict) -> None:
        match event["type"]:
            case "chunk":
                self.console.out(event["text"], end="", highlight=False)
            case "warning":
                self.console.print(f"\n[yellow]Warning: {event['text']}[/yellow]")
            case "error":
                self.console.print(f"\n[red]Error: {event['text']}[/red]")
            case "done":
                self.console.print()
                message = event["message"]
                if message["tool_calls"]:
                    self._display_tool_calls(message["tool_calls"])
                if event.get("status") != "completed":
                    self.console.print(f"[dim]({event.get('status')})[/dim]")

    def _display_tool_calls(self, tool_calls: list[dict]) -> None:
        for call in tool_calls:
            if call["error"] is not None:
                self.console.print(f"[dim]  tool {call['name']}: [red]{call['error']}[/red][/dim]")
            else:
                self.console.print(f"[dim]  tool {call['name']} {call['arguments']}[/dim]")

    def _display_response(self, message: dict) -> None:
        """Display a stored assistant message with nice formatting."""
        self.console.print(
            Panel(
                Markdown(message["content"] or "_(empty)_"),
                title="[bold green]Assistant[/bold green]",
                border_style="green" if message["status"] == "complete" else "yellow",
                padding=(1, 2),
            )
        )
        if message["tool_calls"]:
            self._display_tool_calls(message["tool_calls"])

    def _show_help(self) -> None:
        """Show help information."""
        help_text = """
[bold]Available Commands:[/bold]
• /help - Show this help message
• /new [title] - Start a new conversation with the current provider
• /list - List saved conversations
• /open <id> - Continue a saved conversation
• /provider [name] - List providers, or switch to one
• /tools - List selectable tools
• /use [id ...] - Activate tools for the next messages (no ids clears them)
• /servers - Show MCP server connections
• /reinit <name> - Reconnect an MCP server
• /quit or /exit - Exit the chat

[bold]Tips:[/bold]
• Tool calling must be enabled with use_react_agent in config.yaml
• Press Ctrl+C while a reply streams to cancel it; the partial reply is kept
        """

        self.console.print(Panel(help_text.strip(), title="[cyan]Help[/cyan]", border_style="cyan"))


def _detail(response: httpx.Response) -> str:
    try:
        return response.json().get("detail", response.text)
    except ValueError:
        return response.text


def main():
    """Main entry point for the chat CLI."""
    base_url = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8000"

    chat = ChatCLI(base_url)
    chat.start()


if __name__ == "__main__":
    main()
