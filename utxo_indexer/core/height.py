class HeightTracker:
    """
    Height of the most recently committed block, 0 for an empty chain.

    Owned by the ledger service. It is only moved after the atomic unit that
    changed the chain has committed, so a failed apply or rollback leaves it
    untouched.
    """

    def __init__(self, height: int = 0):
        self._height = height

    @property
    def value(self) -> int:
        return self._height

    async def load(self, store) -> int:
        self._height = await store.get_max_height()
        return self._height

    def commit(self, height: int):
        self._height = height
