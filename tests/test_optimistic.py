import pytest

from storytime.utils.optimistic import OptimisticUpdate
from tests.conftest import run


class Box:
    def __init__(self, value):
        self.value = value

    async def get(self):
        return self.value

    async def set(self, value):
        self.value = value


def update_for(box, tentative):
    return OptimisticUpdate(
        snapshot=box.get,
        apply=lambda: box.set(tentative),
        restore=box.set,
    )


def test_commit_keeps_tentative_state():
    box = Box("free")

    async def scenario():
        async with update_for(box, "premium") as upd:
            assert box.value == "premium"
            upd.commit()
        return upd

    upd = run(scenario())
    assert box.value == "premium"
    assert upd.rolled_back is False


def test_no_commit_restores():
    box = Box("free")

    async def scenario():
        async with update_for(box, "premium") as upd:
            pass
        return upd

    upd = run(scenario())
    assert box.value == "free"
    assert upd.rolled_back is True


def test_exception_restores_and_propagates():
    box = Box("free")

    async def scenario():
        async with update_for(box, "premium") as upd:
            upd.commit()
            raise RuntimeError("billing down")

    with pytest.raises(RuntimeError, match="billing down"):
        run(scenario())
    assert box.value == "free"


def test_restore_failure_does_not_mask_original_error():
    box = Box("free")

    async def broken_restore(prior):
        raise OSError("db gone")

    async def scenario():
        async with OptimisticUpdate(snapshot=box.get, apply=lambda: box.set("premium"), restore=broken_restore):
            raise RuntimeError("billing down")

    with pytest.raises(RuntimeError, match="billing down"):
        run(scenario())
