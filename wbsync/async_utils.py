import asyncio
from typing import Any, Callable, Dict, Iterable, List, Mapping, Sequence


async def run_in_threads(
    func: Callable[..., Any],
    args_list: Iterable[Sequence[Any]],
    max_concurrency: int = 5,
    return_exceptions: bool = False,
) -> List[Any]:
    """
    Run a sync function 'func' over a list/iterable of argument sequences concurrently
    using asyncio.to_thread, bounded by max_concurrency. Returns results in order.
    """
    sem = asyncio.Semaphore(max(1, max_concurrency))

    async def _run_one(args: Sequence[Any]) -> Any:
        async with sem:
            return await asyncio.to_thread(func, *args)

    tasks = [asyncio.create_task(_run_one(args)) for args in args_list]
    return await asyncio.gather(*tasks, return_exceptions=return_exceptions)


async def run_branches(branches: Mapping[str, Callable[[], Any]], max_concurrency: int = 5) -> Dict[str, Any]:
    """
    Run zero-arg callables concurrently in threads. Returns ``{name: result}``
    where a failed branch maps to the exception it raised.
    """
    names = list(branches)
    results = await run_in_threads(
        lambda name: branches[name](),
        [(name,) for name in names],
        max_concurrency=max_concurrency,
        return_exceptions=True,
    )
    return dict(zip(names, results))
