from data.progress import ProgressChannel


def test_initial_snapshot_is_indeterminate() -> None:
    channel = ProgressChannel("job-1")
    latest = channel.latest()

    assert latest.job_id == "job-1"
    assert latest.is_indeterminate
    assert latest.units_processed == 0


def test_latest_value_wins() -> None:
    channel = ProgressChannel("job-1")
    channel.publish("one", 10.0, 5)
    channel.publish("two", 20.0, 8)

    latest = channel.latest()
    assert latest.message == "two"
    assert latest.percent_complete == 20.0
    assert latest.units_processed == 8


def test_percent_is_clamped() -> None:
    channel = ProgressChannel("job-1")
    assert channel.publish(percent_complete=140.0).percent_complete == 100.0
    assert channel.publish(percent_complete=-3.0).percent_complete == 0.0


def test_units_never_decrease() -> None:
    channel = ProgressChannel("job-1")
    channel.publish(units_processed=50)
    update = channel.publish(units_processed=10)

    assert update.units_processed == 50


def test_non_monotonic_channel_allows_going_back() -> None:
    channel = ProgressChannel("job-1")
    channel.publish(percent_complete=60.0)

    assert channel.publish(percent_complete=30.0).percent_complete == 30.0
    assert channel.publish("working").is_indeterminate


def test_monotonic_channel_holds_percent() -> None:
    channel = ProgressChannel("job-1", monotonic_percent=True)
    channel.publish(percent_complete=60.0)

    assert channel.publish(percent_complete=30.0).percent_complete == 60.0
    held = channel.publish("downloading...")
    assert held.percent_complete == 60.0
    assert held.message == "downloading..."


def test_message_kept_when_omitted() -> None:
    channel = ProgressChannel("job-1")
    channel.publish("fetching", 5.0)

    assert channel.publish(percent_complete=6.0).message == "fetching"


def test_listeners_receive_updates_and_can_unsubscribe() -> None:
    channel = ProgressChannel("job-1")
    seen = []
    unsubscribe = channel.subscribe(seen.append)

    channel.publish("a", 1.0)
    unsubscribe()
    unsubscribe()
    channel.publish("b", 2.0)

    assert [u.message for u in seen] == ["a"]


def test_broken_listener_does_not_break_publish() -> None:
    channel = ProgressChannel("job-1")
    seen = []

    def broken(update):
        raise ValueError("bad observer")

    channel.subscribe(broken)
    channel.subscribe(seen.append)

    update = channel.publish("still fine", 50.0)

    assert update.percent_complete == 50.0
    assert seen == [update]
