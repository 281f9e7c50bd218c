import pytest

from models.job import ContainerRole, PhaseStatus
from poller import PollState, ReadinessPoller


def make_poller(gateway, job_request, clock, deadline=10.0, role=ContainerRole.INIT):
    return ReadinessPoller(gateway, job_request.pod_ref, role, deadline, interval=1.0, clock=clock)


def test_unknown_observations_keep_waiting(gateway, job_request, clock):
    gateway.init_phases = [PhaseStatus.unknown(), PhaseStatus.unknown(), PhaseStatus.terminated(0)]

    outcome = make_poller(gateway, job_request, clock).wait()

    assert outcome.state is PollState.READY
    assert outcome.exit_code == 0
    assert outcome.polls == 3
    assert outcome.elapsed == 2.0
    assert clock.sleeps == [1.0, 1.0]


def test_non_zero_exit_is_failure(gateway, job_request, clock):
    gateway.init_phases = [PhaseStatus.pending(), PhaseStatus.running(), PhaseStatus.terminated(2)]

    outcome = make_poller(gateway, job_request, clock).wait()

    assert outcome.state is PollState.FAILED
    assert outcome.exit_code == 2
    assert outcome.polls == 3


def test_times_out_when_never_terminated(gateway, job_request, clock):
    gateway.init_phases = [PhaseStatus.running()]

    outcome = make_poller(gateway, job_request, clock, deadline=3.0).wait()

    assert outcome.state is PollState.TIMED_OUT
    assert outcome.exit_code is None
    # Polls at t=0,1,2,3 are within the deadline; t=4 is past it.
    assert outcome.polls == 5


def test_terminal_observation_wins_over_expired_deadline(gateway, job_request, clock):
    gateway.init_phases = [PhaseStatus.pending()] * 3 + [PhaseStatus.terminated(0)]

    outcome = make_poller(gateway, job_request, clock, deadline=2.0).wait()

    assert outcome.state is PollState.READY
    assert outcome.elapsed == 3.0


def test_polls_the_requested_role(gateway, job_request, clock):
    gateway.hold_main_until_streamed = False
    gateway.main_phases = [PhaseStatus.terminated(0)]

    make_poller(gateway, job_request, clock, role=ContainerRole.MAIN).wait()

    assert gateway.phase_polls[ContainerRole.MAIN] == 1
    assert gateway.phase_polls[ContainerRole.INIT] == 0


def test_rejects_non_positive_interval(gateway, job_request):
    with pytest.raises(ValueError):
        ReadinessPoller(gateway, job_request.pod_ref, ContainerRole.INIT, 10.0, interval=0)
