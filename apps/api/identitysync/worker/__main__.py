from __future__ import annotations

import logging

from identitysync.worker.runner import WorkerConfig, run_worker_forever


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    run_worker_forever(config=WorkerConfig.from_settings())


if __name__ == "__main__":
    main()
