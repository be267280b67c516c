import pytest

from greenviva.tools.gmail import AuthenticationExpired, GmailError, GmailMessage, RateLimited
from greenviva.tools.pipeline import BatchFetcher
from fakes import TZ, FakeGmailClient, transfer_message


def _client_with(n: int) -> FakeGmailClient:
    return FakeGmailClient({f"m{i}": transfer_message(f"m{i}", amount="1.00") for i in range(n)})


def _fetcher(client, sleep, **kwargs) -> BatchFetcher:
    return BatchFetcher(client, batch_size=10, max_retries=3, batch_delay=0.5, tz=TZ, sleep=sleep, **kwargs)


@pytest.mark.asyncio
async def test_23_ids_are_fetched_in_three_batches(no_sleep):
    client = _client_with(23)
    progress = []

    transfers = await _fetcher(client, no_sleep).fetch_transfers(list(client.messages), on_progress=lambda c, t: progress.append((c, t)))

    assert len(transfers) == 23
    assert progress == [(10, 23), (20, 23), (23, 23)]
    # pause between batches, not after the last one
    assert no_sleep.delays == [0.5, 0.5]


@pytest.mark.asyncio
async def test_transfer_gets_timestamp_from_date_header(no_sleep):
    client = FakeGmailClient({"m1": transfer_message("m1", date_header="Fri, 21 Mar 2025 10:15:00 +0000")})
    [transfer] = await _fetcher(client, no_sleep).fetch_transfers(["m1"])
    assert transfer.sender == "Jane Doe"
    assert transfer.amount == 12.50
    assert transfer.timestamp == "2025-03-21T12:15:00+02:00"


@pytest.mark.asyncio
async def test_messages_without_date_or_amount_are_skipped(no_sleep):
    client = FakeGmailClient({
        "ok": transfer_message("ok"),
        "no-date": transfer_message("no-date", date_header=""),
        "bad-date": transfer_message("bad-date", date_header="yesterday-ish"),
        "newsletter": GmailMessage(id="newsletter", headers={"date": "Fri, 21 Mar 2025 10:15:00 +0200"}, body="Hello!"),
    })
    transfers = await _fetcher(client, no_sleep).fetch_transfers(list(client.messages))
    assert len(transfers) == 1


@pytest.mark.asyncio
async def test_rate_limit_is_retried_with_exponential_backoff(no_sleep):
    client = _client_with(1)
    client.failures["m0"] = [RateLimited("slow down"), RateLimited("slow down")]

    transfers = await _fetcher(client, no_sleep).fetch_transfers(["m0"])

    assert len(transfers) == 1
    assert no_sleep.delays == [1, 2]
    assert client.get_calls == ["m0", "m0", "m0"]


@pytest.mark.asyncio
async def test_persistent_rate_limit_aborts_remaining_batches(no_sleep):
    client = _client_with(23)
    client.always_rate_limited.add("m3")

    with pytest.raises(RateLimited):
        await _fetcher(client, no_sleep).fetch_transfers(list(client.messages))

    # first attempt plus three retries for the throttled message
    assert client.get_calls.count("m3") == 4
    assert no_sleep.delays == [1, 2, 4]
    # nothing from the second or third batch was requested
    assert not any(call in client.get_calls for call in [f"m{i}" for i in range(10, 23)])


@pytest.mark.asyncio
async def test_other_failures_skip_only_that_message(no_sleep):
    client = _client_with(3)
    client.failures["m1"] = [GmailError("boom", status_code=500)]

    transfers = await _fetcher(client, no_sleep).fetch_transfers(list(client.messages))

    assert len(transfers) == 2
    assert client.get_calls.count("m1") == 1


@pytest.mark.asyncio
async def test_authentication_failure_aborts(no_sleep):
    client = _client_with(3)
    client.failures["m2"] = [AuthenticationExpired("expired", status_code=401)]

    with pytest.raises(AuthenticationExpired):
        await _fetcher(client, no_sleep).fetch_transfers(list(client.messages))
    assert no_sleep.delays == []


@pytest.mark.asyncio
async def test_empty_id_list(no_sleep):
    assert await _fetcher(_client_with(0), no_sleep).fetch_transfers([]) == []


def test_batch_size_must_be_positive():
    with pytest.raises(ValueError):
        BatchFetcher(FakeGmailClient(), batch_size=0)
