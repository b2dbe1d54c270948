"""Memory injection helper for prompt augmentation."""

from __future__ import annotations

from memory.context_assembler import AssembledContext


def render_memory_block(assembled: AssembledContext | None, max_lines: int | None = None) -> str:
    """Render assembled memory as a system-prompt block, or an empty string."""
    if assembled is None:
        return ""
    lines = assembled.lines()
    if max_lines is not None:
        lines = lines[:max_lines]
    if not lines:
        return ""
    return "Relevant memories:\n" + "\n".join(
        f"- {line}" for line in lines
    )


def inject_memory(
    messages: list[dict[str, str]],
    assembled: AssembledContext | None,
) -> list[dict[str, str]]:
    """Prepend the memory block as a system message when there is one."""
    block = render_memory_block(assembled)
    if not block:
        return messages
    return [{"role": "system", "content": block}, *messages]
