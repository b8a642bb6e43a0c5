#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""
Live Stream Example - consume detections over WebSocket.

Demonstrates:
- Spout as an async context manager and iterator
- Bounded buffering with drop accounting
- Reporting stream errors without stopping the consumer

Run:
    LC_OID=... LC_API_KEY=... python live_stream.py
"""

import asyncio
import logging

from limacharlie import Client, ClientOptions, Spout

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)

MAX_DETECTIONS = 20


async def main():
    async with Client(ClientOptions()) as client:
        async with Spout(client, "detect", max_buffer=256) as spout:
            seen = 0
            async for detection in spout:
                routing = detection.get("routing", {})
                logger.info(f"{detection.get('cat')} on {routing.get('hostname')}")
                seen += 1
                if seen >= MAX_DETECTIONS:
                    break

            while not spout.errors.empty():
                logger.warning(f"Stream error: {spout.errors.get_nowait()}")
            logger.info(f"Metrics: {spout.metrics.to_dict()}")


if __name__ == "__main__":
    asyncio.run(main())
