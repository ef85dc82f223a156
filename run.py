#!/usr/bin/env python3
"""
Ar-Rahnu Core Entry Point

Starts the FastAPI server with the pawn broking core.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from rahnu_core.api import run_server
from rahnu_core.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Ar-Rahnu Core...")
    print("Dual-approval vault custody enabled")
    print("Audit trail active")
    print("All gold and currency calculations use Decimal precision")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Ar-Rahnu Core...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
