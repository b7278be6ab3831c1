"""Shared helpers: polling and direct loopback negotiation."""

import asyncio

from orbitdrop.channel.loopback import LoopbackNetwork, LoopbackTransport


async def wait_until(predicate, timeout: float = 3.0):
    """Poll a predicate on the event loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.005)


async def open_pair(network: LoopbackNetwork, low_water_mark: int = 512 * 1024):
    """Negotiate two loopback transports directly, without signaling."""
    offerer = LoopbackTransport(network, low_water_mark=low_water_mark)
    answerer = LoopbackTransport(network, low_water_mark=low_water_mark)

    offer = await offerer.create_offer()
    await answerer.set_remote_description(offer)
    answer = await answerer.create_answer()
    await offerer.set_remote_description(answer)

    await wait_until(lambda: offerer.channel is not None and answerer.channel is not None)
    return offerer, answerer
