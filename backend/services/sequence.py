from redis import Redis

from core.security import BranchScope


class SequenceGenerator:
    """Per tenant+branch token counter backed by Redis ``INCR``.

    Counters never reset and never repeat within a branch; gaps are possible
    when an order insert fails after the token was taken.
    """

    KEY_TEMPLATE = "order_seq:{tenant_id}:{branch_id}"

    def __init__(self, client: Redis):
        self.client = client

    def next_token(self, scope: BranchScope) -> int:
        key = self.KEY_TEMPLATE.format(tenant_id=scope.tenant_id, branch_id=scope.branch_id)
        return int(self.client.incr(key))

    @staticmethod
    def order_number(token: int) -> str:
        return f"ORD-{token}"
