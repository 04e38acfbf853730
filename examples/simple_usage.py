#!/usr/bin/env python3
"""
Simple example of using the PRMX SDK against a local development node.
"""
import asyncio
import logging
import os
import time
from decimal import Decimal

from substrateinterface import Keypair

from prmx_sdk import LedgerClient, PrmxError


async def main():
    """
    Demonstrate basic usage of the LedgerClient.

    This example shows how to:
    1. Connect to a node from network configuration
    2. Create an underwrite request and read back its minted id
    3. List the requests that are still open
    """
    logging.basicConfig(level=logging.INFO)

    # //Alice is only funded on development chains
    signer = Keypair.create_from_uri(os.environ.get("PRMX_SIGNER_URI", "//Alice"))
    now = int(time.time())

    async with LedgerClient.connect(os.environ.get("PRMX_NETWORK", "local")) as client:
        health = await client.health()
        print(f"Oracle service: {health.overall_status}")

        result = await client.create_request(
            signer,
            location_id=0,
            event_spec={"event_type": "PrecipSumGte", "threshold": {"value": 50000, "unit": "MmX1000"}},
            total_shares=10,
            premium_per_share=Decimal("5"),
            coverage_start=now + 21 * 86400,
            coverage_end=now + 28 * 86400,
            expires_at=now + 7 * 86400
        )

        try:
            result.outcome.raise_for_status()
        except PrmxError as e:
            print(f"Request failed: {e}")
            return

        print(f"Request created in block {result.outcome.block_hash}")
        print(f"Request id: {result.identifiers[0] if result.identifiers else 'unknown'}")
        if result.correlation is not None and not result.correlation.verified:
            print("Warning: events could not be verified against the block")

        for request in await client.get_open_requests():
            print(f"{request.id}: {request.remaining_shares} shares at {request.premium_per_share} USDT")


if __name__ == "__main__":
    asyncio.run(main())
