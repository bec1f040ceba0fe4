import asyncio

from twinlearn.learning.locks import AsyncRWLock, KeyedLocks


async def test_keyed_locks_serialize_same_key_only():
    locks = KeyedLocks()
    active = {"a": 0, "b": 0}
    peak = {"a": 0, "b": 0}

    async def job(key):
        async with locks.hold(key):
            active[key] += 1
            peak[key] = max(peak[key], active[key])
            await asyncio.sleep(0.001)
            active[key] -= 1

    await asyncio.gather(*(job("a") for _ in range(5)), *(job("b") for _ in range(5)))

    assert peak == {"a": 1, "b": 1}
    assert len(locks) == 0


async def test_keyed_locks_allow_different_keys_concurrently():
    locks = KeyedLocks()
    entered = asyncio.Event()

    async with locks.hold("a"):
        async def other():
            async with locks.hold("b"):
                entered.set()

        await asyncio.wait_for(other(), timeout=1)

    assert entered.is_set()


async def test_readers_share_the_lock():
    lock = AsyncRWLock()
    inside = []

    async def reader(i):
        async with lock.read():
            inside.append(lock.readers)
            await asyncio.sleep(0.001)

    await asyncio.gather(*(reader(i) for i in range(3)))
    assert max(inside) == 3
    assert lock.readers == 0


async def test_waiting_writer_goes_before_new_readers():
    lock = AsyncRWLock()
    order = []

    async def writer():
        async with lock.write():
            assert lock.writing
            order.append("write")
            await asyncio.sleep(0)

    async def late_reader():
        async with lock.read():
            order.append("read")

    async with lock.read():
        writing = asyncio.create_task(writer())
        await asyncio.sleep(0)
        reading = asyncio.create_task(late_reader())
        await asyncio.sleep(0)
        assert order == []

    await asyncio.gather(writing, reading)
    assert order == ["write", "read"]
    assert not lock.writing


async def test_cancelled_writer_does_not_block_readers():
    lock = AsyncRWLock()

    async def writer():
        async with lock.write():
            pass

    async with lock.read():
        waiting = asyncio.create_task(writer())
        await asyncio.sleep(0)
        waiting.cancel()
        await asyncio.gather(waiting, return_exceptions=True)

    async with lock.read():
        assert lock.readers == 1
