"""
Main entry point for the photogether package.
Run the relay server with: python -m photogether
"""
import asyncio

from photogether.relay.server import main

if __name__ == "__main__":
    asyncio.run(main())
