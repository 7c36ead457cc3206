from __future__ import annotations

from rich.console import Console as RichConsole
from rich.style import Style
from rich.text import Text

from nodule.config.settings import HarnessSettings
from nodule.kernel.node import Node


class Console(Node):
    """Colored terminal sink: prints every item it reads, prefixed by its source.

    ``fg``/``bg`` accept any rich color name or ``#rrggbb`` value. The prefix
    comes from the node that delivered the item (``source.prefix``), so lines
    forwarded from a process show that process's ``[name]: `` tag.
    """

    def __init__(
        self,
        *,
        fg: str | None = None,
        bg: str | None = None,
        console: RichConsole | None = None,
        settings: HarnessSettings | None = None,
        **options: object,
    ) -> None:
        super().__init__(settings=settings, **options)  # type: ignore[arg-type]
        self.style = Style(color=fg, bgcolor=bg)
        self.console = console or RichConsole(highlight=False, soft_wrap=True)
        self.add_reader(self.display)

    def display(self, item: object, source: Node | None = None) -> None:
        line = item.decode("utf-8", errors="replace") if isinstance(item, bytes) else str(item)
        prefix = getattr(source, "prefix", "") if source is not None else ""
        text = Text(str(prefix))
        text.append(line.rstrip("\n"), style=self.style)
        self.console.print(text)
