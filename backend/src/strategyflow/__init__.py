"""strategyflow - Strategy session state client for a trading strategy engine"""

__version__ = "0.1.0"

def main() -> None:
    """Main entry point for the application"""
    from .__main__ import main as cli_main
    cli_main()
