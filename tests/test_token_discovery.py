import asyncio

import pytest

from conftest import make_pubkey
from ledger_mirror.discovery.service import TOKEN_PROGRAM_ID, TokenDiscoveryService
from ledger_mirror.models import ParsedTransaction, SignatureInfo, TokenCategory, TokenMetadata

RAYDIUM_AMM = "675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8"
JUPITER = "JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4"
WALLET = make_pubkey(9)

MINT_A = make_pubkey(10)
MINT_B = make_pubkey(11)
MINT_C = make_pubkey(12)


def _add_tx(ledger, clock, signature, slot, mints, programs=(), age_seconds=60):
    block_time = int(clock.now - age_seconds)
    ledger.signatures.setdefault(TOKEN_PROGRAM_ID, []).append(
        SignatureInfo(signature, slot=slot, block_time=block_time)
    )
    ledger.transactions[signature] = ParsedTransaction(
        signature=signature,
        slot=slot,
        block_time=block_time,
        account_keys=[WALLET, TOKEN_PROGRAM_ID, *programs],
        post_token_mints=list(mints),
        log_messages=[],
    )


def _service(ledger, metadata, clock, **discovery):
    return TokenDiscoveryService(ledger, metadata, {"discovery": discovery}, clock=clock)


@pytest.mark.asyncio
async def test_refresh_discovers_and_classifies(ledger, metadata, clock):
    metadata.known[MINT_A] = TokenMetadata(name="Alpha", symbol="ALP", decimals=6)
    _add_tx(ledger, clock, "s1", 103, [MINT_A], programs=[RAYDIUM_AMM])
    _add_tx(ledger, clock, "s2", 102, [MINT_A, MINT_B])
    _add_tx(ledger, clock, "s3", 101, [MINT_A])
    service = _service(ledger, metadata, clock)

    assert await service.refresh() is True

    tokens = {t.mint: t for t in service.get_tokens_sync()}
    assert set(tokens) == {MINT_A, MINT_B}
    assert tokens[MINT_A].name == "Alpha"
    assert tokens[MINT_A].recent_activity == 3
    assert tokens[MINT_A].has_liquidity_pool
    assert tokens[MINT_A].has_dex_interaction
    assert tokens[MINT_A].category == TokenCategory.MIGRATED
    assert tokens[MINT_B].category == TokenCategory.NEW_PAIRS
    assert tokens[MINT_B].age_seconds == 60
    assert service.get_last_refresh_time() == clock.now


@pytest.mark.asyncio
async def test_missing_metadata_uses_placeholder(ledger, metadata, clock):
    _add_tx(ledger, clock, "s1", 100, [MINT_A])
    _add_tx(ledger, clock, "s2", 99, [MINT_B])
    metadata.known[MINT_B] = None
    service = _service(ledger, metadata, clock)

    await service.refresh()

    token = next(t for t in service.get_tokens_sync() if t.mint == MINT_A)
    assert token.name == "Unknown Token"
    assert token.symbol == MINT_A[:6].upper()
    assert token.decimals == 9


@pytest.mark.asyncio
async def test_failing_metadata_uses_placeholder(ledger, metadata, clock):
    metadata.fail = True
    _add_tx(ledger, clock, "s1", 100, [MINT_A])
    service = _service(ledger, metadata, clock)

    await service.refresh()

    assert service.get_tokens_sync()[0].name == "Unknown Token"


@pytest.mark.asyncio
async def test_reobservation_is_idempotent(ledger, metadata, clock):
    _add_tx(ledger, clock, "s1", 100, [MINT_A], programs=[JUPITER])
    _add_tx(ledger, clock, "s2", 99, [MINT_A, MINT_B])
    service = _service(ledger, metadata, clock)

    await service.refresh()
    first = {t.mint: t for t in service.get_tokens_sync()}
    await service.refresh()
    second = {t.mint: t for t in service.get_tokens_sync()}

    assert set(first) == set(second)
    for mint in first:
        assert second[mint].recent_activity == first[mint].recent_activity
        assert second[mint].category == first[mint].category
        assert second[mint].detected_at == first[mint].detected_at
        assert second[mint].has_dex_interaction == first[mint].has_dex_interaction
    assert len(metadata.calls) == 2


@pytest.mark.asyncio
async def test_flags_never_reset_and_first_seen_only_moves_earlier(ledger, metadata, clock):
    _add_tx(ledger, clock, "s1", 100, [MINT_A], programs=[JUPITER], age_seconds=60)
    service = _service(ledger, metadata, clock)
    await service.refresh()
    detected_at = service.get_tokens_sync()[0].detected_at

    ledger.signatures.clear()
    ledger.transactions.clear()
    _add_tx(ledger, clock, "s2", 150, [MINT_A], age_seconds=10)
    await service.refresh()

    token = service.get_tokens_sync()[0]
    assert token.has_dex_interaction
    assert token.category == TokenCategory.FINAL_STRETCH
    assert token.detected_at == detected_at
    assert token.slot == 100


@pytest.mark.asyncio
async def test_connectivity_failure_aborts_pass(ledger, metadata, clock):
    ledger.fail_health = True
    _add_tx(ledger, clock, "s1", 100, [MINT_A])
    service = _service(ledger, metadata, clock)

    assert await service.refresh() is False

    assert service.get_tokens_sync() == []
    assert service.get_last_refresh_time() == 0
    assert "getSignaturesForAddress" not in ledger.calls


@pytest.mark.asyncio
async def test_failed_transactions_are_skipped(ledger, metadata, clock):
    _add_tx(ledger, clock, "s1", 100, [MINT_A])
    _add_tx(ledger, clock, "s2", 99, [MINT_B])
    ledger.failing.add("s1")
    service = _service(ledger, metadata, clock)

    assert await service.refresh() is True
    assert [t.mint for t in service.get_tokens_sync()] == [MINT_B]


@pytest.mark.asyncio
async def test_windows_limit_the_scan(ledger, metadata, clock):
    for i in range(6):
        _add_tx(ledger, clock, f"s{i}", 100 - i, [make_pubkey(20 + i)])
    service = _service(ledger, metadata, clock, tx_window=4, batch_size=3)

    await service.refresh()

    assert ledger.calls.count("getTransaction") == 4
    assert len(service.get_tokens_sync()) == 4


@pytest.mark.asyncio
async def test_top_k_keeps_most_active(ledger, metadata, clock):
    _add_tx(ledger, clock, "s1", 100, [MINT_A, MINT_B, MINT_C])
    _add_tx(ledger, clock, "s2", 99, [MINT_A, MINT_B])
    _add_tx(ledger, clock, "s3", 98, [MINT_A])
    service = _service(ledger, metadata, clock, top_k=2)

    await service.refresh()

    assert {t.mint for t in service.get_tokens_sync()} == {MINT_A, MINT_B}


@pytest.mark.asyncio
async def test_cache_is_capped_by_least_recently_seen(ledger, metadata, clock):
    _add_tx(ledger, clock, "s1", 100, [MINT_A])
    service = _service(ledger, metadata, clock, max_tokens=1)
    await service.refresh()

    clock.advance(30)
    ledger.signatures.clear()
    ledger.transactions.clear()
    _add_tx(ledger, clock, "s2", 200, [MINT_B])
    await service.refresh()

    assert [t.mint for t in service.get_tokens_sync()] == [MINT_B]


@pytest.mark.asyncio
async def test_single_flight_serves_previous_snapshot(ledger, metadata, clock):
    _add_tx(ledger, clock, "s1", 100, [MINT_A])
    service = _service(ledger, metadata, clock)
    ledger.health_gate = asyncio.Event()

    running = asyncio.create_task(service.refresh())
    await asyncio.sleep(0)

    assert service.get_cache_stats()["is_refreshing"] is True
    assert await service.refresh() is False
    assert await service.get_tokens() == []

    ledger.health_gate.set()
    assert await running is True
    assert service.get_cache_stats() == {
        "token_count": 1,
        "last_refresh": clock.now,
        "is_refreshing": False,
    }
    assert ledger.calls.count("getLatestBlockhash") == 1


@pytest.mark.asyncio
async def test_pass_is_applied_only_after_metadata_arrives(ledger, metadata, clock):
    _add_tx(ledger, clock, "s1", 100, [MINT_A])
    service = _service(ledger, metadata, clock)
    await service.refresh()

    _add_tx(ledger, clock, "s2", 101, [MINT_A, MINT_B])
    metadata.gates[MINT_B] = asyncio.Event()
    clock.advance(30)
    running = asyncio.create_task(service.refresh())
    await asyncio.sleep(0.01)

    tokens = service.get_tokens_sync()
    assert [t.mint for t in tokens] == [MINT_A]
    assert tokens[0].recent_activity == 1
    assert service.get_last_refresh_time() == clock.now - 30

    metadata.gates[MINT_B].set()
    assert await running is True
    tokens = {t.mint: t for t in service.get_tokens_sync()}
    assert set(tokens) == {MINT_A, MINT_B}
    assert tokens[MINT_A].recent_activity == 2


@pytest.mark.asyncio
async def test_get_tokens_refreshes_only_when_stale(ledger, metadata, clock):
    _add_tx(ledger, clock, "s1", 100, [MINT_A])
    service = _service(ledger, metadata, clock, cache_ttl_seconds=15)

    await service.get_tokens()
    clock.advance(10)
    await service.get_tokens()
    assert ledger.calls.count("getLatestBlockhash") == 1

    clock.advance(10)
    await service.get_tokens()
    assert ledger.calls.count("getLatestBlockhash") == 2


@pytest.mark.asyncio
async def test_readers_get_copies_with_current_age(ledger, metadata, clock):
    _add_tx(ledger, clock, "s1", 100, [MINT_A], age_seconds=60)
    service = _service(ledger, metadata, clock)
    await service.refresh()

    copy = service.get_tokens_sync()[0]
    copy.name = "mutated"
    clock.advance(40)

    token = service.get_tokens_sync()[0]
    assert token.name != "mutated"
    assert token.age_seconds == 100


@pytest.mark.asyncio
async def test_search_token(ledger, metadata, clock):
    _add_tx(ledger, clock, "s1", 100, [MINT_A])
    metadata.known[MINT_C] = TokenMetadata(name="Gamma", symbol="GAM", decimals=5)
    service = _service(ledger, metadata, clock)
    await service.refresh()

    assert await service.search_token("not-a-mint") is None
    assert (await service.search_token(MINT_A)).mint == MINT_A

    found = await service.search_token(MINT_C)
    assert found.name == "Gamma"
    assert found.category == TokenCategory.NEW_PAIRS
    assert MINT_C not in {t.mint for t in service.get_tokens_sync()}


@pytest.mark.asyncio
async def test_background_refresh_runs_until_stopped(ledger, metadata, clock):
    _add_tx(ledger, clock, "s1", 100, [MINT_A])
    service = _service(ledger, metadata, clock)

    service.start_background_refresh(0.01)
    await asyncio.sleep(0.05)
    await service.stop()
    calls = ledger.calls.count("getLatestBlockhash")
    await asyncio.sleep(0.03)

    assert calls >= 2
    assert ledger.calls.count("getLatestBlockhash") == calls
    assert len(service.get_tokens_sync()) == 1
