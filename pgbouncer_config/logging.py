from rich.console import Console

CONSOLE = Console()
ERROR_CONSOLE = Console(stderr=True)
