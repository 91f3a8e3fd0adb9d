import pytest

from rendezvous.schemas.enums import ConnectionStatus, RespondAction


@pytest.mark.parametrize(
    "source,target,allowed",
    [
        (ConnectionStatus.pending, ConnectionStatus.accepted, True),
        (ConnectionStatus.pending, ConnectionStatus.rejected, True),
        (ConnectionStatus.accepted, ConnectionStatus.rejected, False),
        (ConnectionStatus.accepted, ConnectionStatus.pending, False),
        (ConnectionStatus.rejected, ConnectionStatus.accepted, False),
        (ConnectionStatus.rejected, ConnectionStatus.pending, False),
    ],
)
def test_respond_transitions(source, target, allowed):
    assert source.can_transition(target) is allowed


def test_block_can_force_accepted_to_rejected():
    assert ConnectionStatus.accepted.can_transition(ConnectionStatus.rejected, forced_by_block=True)
    assert ConnectionStatus.pending.can_transition(ConnectionStatus.rejected, forced_by_block=True)
    assert not ConnectionStatus.rejected.can_transition(ConnectionStatus.accepted, forced_by_block=True)


def test_terminal_states():
    assert not ConnectionStatus.pending.is_terminal
    assert ConnectionStatus.accepted.is_terminal
    assert ConnectionStatus.rejected.is_terminal


def test_respond_action_maps_to_status():
    assert RespondAction.accept.resulting_status is ConnectionStatus.accepted
    assert RespondAction.reject.resulting_status is ConnectionStatus.rejected
