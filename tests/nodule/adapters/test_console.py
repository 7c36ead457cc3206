from __future__ import annotations

import io

from rich.console import Console as RichConsole

from nodule.adapters.console import Console
from nodule.kernel.actions import Ref
from nodule.kernel.node import Node
from nodule.kernel.topology import Topology


def _console() -> tuple[Console, io.StringIO]:
    buffer = io.StringIO()
    rich_console = RichConsole(file=buffer, force_terminal=False, width=200, highlight=False, soft_wrap=True)
    return Console(fg="green", console=rich_console), buffer


def test_display_prefixes_lines_with_source_tag() -> None:
    console, buffer = _console()
    source = Node(prefix="[child]: ")
    console.run_readers("hello\n", source)
    console.run_readers(b"bytes too\n", source)
    assert buffer.getvalue() == "[child]: hello\n[child]: bytes too\n"
    assert console.read_count == 2


def test_symbol_forwarding_uses_topology_prefix() -> None:
    # Lines forwarded by name carry the forwarding node's "[name]: " prefix.
    console, buffer = _console()
    producer = Node(readers=[Ref("console")])
    topology = Topology(producer=producer, console=console)
    topology.start("producer")
    producer.run_readers("line\n")
    assert buffer.getvalue() == "[producer]: line\n"


def test_display_without_source_has_no_prefix() -> None:
    console, buffer = _console()
    console.display("plain")
    assert buffer.getvalue() == "plain\n"
    assert console.style.color is not None
