"""The fixed guest program that runs inside every sandbox instance."""

from importlib import resources

SHIM_FILENAME = "shim.py"


def load_shim_source() -> str:
    """Return the source of the guest shim as shipped with this package."""
    return resources.files(__name__).joinpath(SHIM_FILENAME).read_text(encoding="utf-8")
