"""Property-based tests for sent-ledger reconciliation."""

from datetime import UTC, datetime, timedelta

from hypothesis import given
from hypothesis import strategies as st

from digest_bot.models import Recipient, SentArticle, State
from digest_bot.state import MAX_SENT_HISTORY, update_state

T0 = datetime(2025, 1, 1, tzinfo=UTC)
NOW = datetime(2025, 3, 10, 12, 0, tzinfo=UTC)

id_strategy = st.text(alphabet="abcdef0123456789", min_size=1, max_size=6)


@st.composite
def state_strategy(draw):
    """Generate a state with a duplicate-free ledger."""
    ids = draw(st.lists(id_strategy, unique=True, max_size=30))
    return State(
        last_run=draw(st.none() | st.just(T0)),
        sent_articles=[
            SentArticle(id=i, sent_at=T0 + timedelta(minutes=n)) for n, i in enumerate(ids)
        ],
        recipients=[Recipient(name="alice", chat_id="1", updated_at=T0)],
        external_cursor=draw(st.integers(min_value=0, max_value=1000)),
    )


class TestUpdateStateProperties:
    """Property tests for update_state."""

    @given(state_strategy(), st.lists(id_strategy, max_size=30))
    def test_idempotent(self, state, ids):
        """Applying the same ids twice adds no extra ledger rows."""
        once = update_state(state, ids, NOW)
        twice = update_state(once, ids, NOW)

        assert twice.sent_articles == once.sent_articles
        ledger_ids = [item.id for item in twice.sent_articles]
        assert len(ledger_ids) == len(set(ledger_ids))

    @given(state_strategy(), st.lists(id_strategy, max_size=30))
    def test_pure_and_sets_last_run(self, state, ids):
        """The input state is untouched and last_run is always now."""
        ledger_before = list(state.sent_articles)
        last_run_before = state.last_run

        new_state = update_state(state, ids, NOW)

        assert state.sent_articles == ledger_before
        assert state.last_run == last_run_before
        assert new_state.last_run == NOW
        assert new_state.recipients == state.recipients
        assert new_state.external_cursor == state.external_cursor

    @given(state_strategy(), st.lists(id_strategy, max_size=30))
    def test_every_new_id_is_recorded_with_now(self, state, ids):
        new_state = update_state(state, ids, NOW)

        previous = state.sent_ids()
        by_id = {item.id: item for item in new_state.sent_articles}
        for article_id in ids:
            assert article_id in by_id
            if article_id not in previous:
                assert by_id[article_id].sent_at == NOW

    @given(
        st.integers(min_value=0, max_value=MAX_SENT_HISTORY),
        st.integers(min_value=1, max_value=120),
    )
    def test_eviction_drops_oldest_by_insertion(self, existing, added):
        """Overflowing the ledger evicts exactly the oldest rows."""
        state = State(
            sent_articles=[SentArticle(id=f"old-{n}", sent_at=T0) for n in range(existing)]
        )
        new_ids = [f"new-{n}" for n in range(added)]

        new_state = update_state(state, new_ids, NOW)

        expected = [f"old-{n}" for n in range(existing)] + new_ids
        expected = expected[-MAX_SENT_HISTORY:]
        assert [item.id for item in new_state.sent_articles] == expected
        assert len(new_state.sent_articles) == min(existing + added, MAX_SENT_HISTORY)
