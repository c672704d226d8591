"""
Message text for the chat. Everything sent with MarkdownV2 goes through
escape_markdown here.
"""
from telegram.helpers import escape_markdown


def md(text) -> str:
    """Escape a value for MarkdownV2."""
    return escape_markdown(str(text), version=2)


def format_with_dots(amount) -> str:
    """Group thousands with dots: 1234567.8 -> '1.234.567'.

    Fractions are truncated.
    """
    try:
        number = int(float(amount))
    except (ValueError, TypeError):
        number = 0
    sign = "-" if number < 0 else ""
    return sign + f"{abs(number):,}".replace(",", ".")


def format_shift_message(server_alias, shift, title="Current shift"):
    """Format a single shift report."""
    return (
        f"*Server*: *{md(server_alias)}*\n"
        f"*{md(title)}*:\n"
        f"Shift number: *{md(format_with_dots(shift.session_number))}*\n"
        f"Status: *{md(shift.session_status.label)}*\n"
        f"Paid by card: *{md(format_with_dots(shift.sales_card))}*\n"
        f"Paid in cash: *{md(format_with_dots(shift.sales_cash))}*\n"
        f"Total: *{md(format_with_dots(shift.pay_orders))}*"
    )


def format_total_message(server_alias, period_label, total):
    """Format a period total over several shifts."""
    return (
        f"*Server*: *{md(server_alias)}*\n"
        f"*Total for {md(period_label)}*: *{md(format_with_dots(total))}*"
    )


def format_server_list(servers, current):
    """List aliases with their addresses and mark the current one."""
    lines = [f"{alias} -> {url}" for alias, url in servers.items()]
    return (
        "*Servers*:\n"
        f"{md(chr(10).join(lines))}\n"
        f"*Selected server*: *{md(current)}*"
    )


def format_olap_table(category, table):
    """Wrap a rendered table in a code block under its category name."""
    body = escape_markdown(table, version=2, entity_type='pre')
    return f"*{md(category)}*\n```\n{body}\n```"


def format_handles(title, handles):
    if not handles:
        return f"{title}: none"
    return f"{title}:\n" + "\n".join(f"@{handle}" for handle in handles)
