"""Storage package utilities."""

__all__ = ["ResultStore", "probe"]


def __getattr__(name: str):
    if name == "ResultStore":
        from storage.controller import ResultStore

        return ResultStore
    if name == "probe":
        from storage.diagnostics import probe

        return probe
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
