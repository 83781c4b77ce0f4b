"""ghostpipe: live, permissioned file sync between a repository and remote interfaces."""

__version__ = "0.4.0"
