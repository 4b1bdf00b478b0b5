"""
Parallel per-file selection on a local Dask cluster.

Every ntuple becomes one delayed call of the per-file analysis. Each
call owns its own cut flows and histograms; the driver merges what
comes back.
"""

from dask.distributed import Client, LocalCluster
from dask import delayed


def create_local_client(n_workers=4, threads_per_worker=1):
    """
    Start a LocalCluster of worker processes and connect to it.

    The event loop is pure Python, so workers are separate processes
    rather than threads of one interpreter.

    Returns
    -------
    dask.distributed.Client
    """
    cluster = LocalCluster(
        n_workers=n_workers,
        threads_per_worker=threads_per_worker,
        processes=True,
    )
    return Client(cluster)


def map_files(client, filenames, process_function, config):
    """
    One delayed selection task per input ntuple.

    Parameters
    ----------
    client : dask.distributed.Client
        Cluster the tasks will run on; building the graph does not use it.
    filenames : list of str
        ROOT ntuples to select events from.
    process_function : callable
        ``process_function(filename, config)`` returning
        ``(HistogramSet, info)`` with the file's cut flows in ``info``,
        or None when the file could not be processed.
    config : dict
        Analysis configuration shared by all files.

    Returns
    -------
    list of dask.delayed.Delayed, in the order of ``filenames``.
    """
    return [delayed(process_function)(filename, config) for filename in filenames]


def gather_results(client, tasks):
    """Run the per-file tasks and return their results in input order."""
    futures = client.compute(tasks)
    return client.gather(futures)
