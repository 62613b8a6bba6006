from __future__ import annotations

from arq import run_worker

from keyforge.workers.provisioning_worker import WorkerSettings


def main() -> None:
    # Run the arq worker that executes provisioning jobs.
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
