import uuid

MESSAGE_LABEL = "消息"


def aggregate_message_content(contents: list[str]) -> str:
    """Merge the contents of a batch into the single prompt sent to the remote service

    A single message is passed through verbatim, several messages are labelled
    with their 1-based position and separated by a blank line.

    Args:
        contents (list[str]): The message contents, in arrival order

    Returns:
        str: The aggregated content
    """
    if len(contents) == 1:
        return contents[0]
    return "\n\n".join(
        f"{MESSAGE_LABEL}{index}：\n{content}" for index, content in enumerate(contents, start=1)
    )


def new_batch_id(prefix: str = "batch") -> str:
    """Generate a globally unique batch identifier

    Args:
        prefix (str): Identifier prefix, e.g. ``batch`` or ``retry_single``

    Returns:
        str: The batch identifier
    """
    return f"{prefix}_{uuid.uuid4().hex}"


def truncate(text: str, max_length: int) -> str:
    return text if len(text) <= max_length else text[: max_length - 3] + "..."
