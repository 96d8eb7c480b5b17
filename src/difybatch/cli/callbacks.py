import typer


def base_url_callback(ctx: typer.Context, value: str):
    if ctx.resilient_parsing:
        return
    if not value.startswith(("http://", "https://")):
        raise typer.BadParameter(
            message=f"'{value}' is not a valid base URL, it must start with http:// or https://",
            param_hint="--base-url",
        )
    return value.rstrip("/")


def positive_int_callback(ctx: typer.Context, value: int):
    if ctx.resilient_parsing:
        return
    if value < 1:
        raise typer.BadParameter(message=f"'{value}' must be a positive integer")
    return value
