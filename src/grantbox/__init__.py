"""Run untrusted Python scripts with no ambient authority.

A script runs in a throwaway container that sees only the host
directories explicitly granted to it.  See :class:`grantbox.host.GuestRuntimeHost`.
"""

__version__ = "0.1.0"
