"""Small helpers shared by the pipeline and the command line."""

_UNITS = ('B', 'KB', 'MB', 'GB')


def prettify_byte_count(count: int) -> str:
    """Human readable size with two decimals, e.g. ``'1.50 KB'``.

    Units step by 1024 and stop at GB.
    """
    if count < 0:
        raise ValueError("byte count cannot be negative")
    size = float(count)
    unit = 0
    while size >= 1024.0 and unit < len(_UNITS) - 1:
        size /= 1024.0
        unit += 1
    return f"{size:.2f} {_UNITS[unit]}"
