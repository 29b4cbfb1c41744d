"""absbuild - convention-driven MSVC build orchestrator for Windows C++ projects."""

__version__ = "0.3.0"
