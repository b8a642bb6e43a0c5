#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""
Firehose Example - receive events pushed by LimaCharlie over TLS.

The listener registers a temporary syslog output pointing at
PUBLIC_IP:PORT and removes it again on exit. The machine must be
reachable from the internet on that address.

Run:
    PUBLIC_IP=203.0.113.7 python firehose_listener.py
"""

import asyncio
import logging
import os

from limacharlie import Client, ClientOptions, Firehose, FirehoseOptions, FirehoseOutputOptions

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)


async def main():
    options = FirehoseOptions(
        listen_ip="0.0.0.0",
        listen_port=int(os.environ.get("PORT", "4443")),
        connect_ip=os.environ["PUBLIC_IP"],
        output=FirehoseOutputOptions(unique_name="example", type="event", is_delete_on_failure=True),
    )

    async with Client(ClientOptions()) as client:
        async with Firehose(client, options) as firehose:
            logger.info(f"Waiting for data on {firehose.connect_address}")
            for _ in range(100):
                msg = await firehose.get()
                logger.info(f"{msg.content.get('routing', {}).get('event_type')}")
            logger.info(f"Metrics: {firehose.metrics.to_dict()}")


if __name__ == "__main__":
    asyncio.run(main())
