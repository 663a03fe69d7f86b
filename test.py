"""Manual check against a live Redis server."""

import asyncio

import subagain


def _print_message(channel: bytes, pattern: bytes | None, payload: bytes) -> None:
    print(channel, pattern, payload)


async def _main() -> None:
    async with subagain.Redis.from_url("redis://127.0.0.1:6379") as client:
        con = await client.get_connection()
        session = await client.pubsub()

        r1 = await session.subscribe("channel1", "channel2", handler=_print_message)
        print(r1, type(r1))

        r2 = await session.psubscribe("c[ha]annel3", handler=_print_message)
        print(r2)

        for channel in ("channel1", "channel2", "channel3"):
            print(await con.publish(channel, "A"))

        print(await con.pubsub_numsub("channel1", "channel3"))
        print(await con.pubsub_numpat())

        r3 = await session.unsubscribe()
        print(r3)

        print(await con.pubsub_channels())


asyncio.run(_main())
