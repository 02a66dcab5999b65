from core.security import BranchScope
from services.sequence import SequenceGenerator


def test_tokens_count_up_per_branch(fake_redis):
    sequence = SequenceGenerator(fake_redis)
    main, annex = BranchScope("t1", "main"), BranchScope("t1", "annex")

    assert [sequence.next_token(main) for _ in range(3)] == [1, 2, 3]
    assert sequence.next_token(annex) == 1
    assert sequence.next_token(BranchScope("t2", "main")) == 1
    assert fake_redis.get("order_seq:t1:main") == "3"


def test_tokens_survive_a_new_generator(fake_redis):
    scope = BranchScope("t1", "main")
    SequenceGenerator(fake_redis).next_token(scope)
    assert SequenceGenerator(fake_redis).next_token(scope) == 2


def test_order_number_format():
    assert SequenceGenerator.order_number(42) == "ORD-42"
