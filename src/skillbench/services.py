"""Wires the engine components together for one process."""

from dataclasses import dataclass

from skillbench.core.analysis import OracleAnalyzer
from skillbench.core.config import OracleConfig, load_oracle_config
from skillbench.core.iteration import RoundController
from skillbench.core.oracle import Oracle, build_oracle
from skillbench.core.recompose import OracleRecomposer
from skillbench.core.scheduler import RunScheduler


@dataclass
class Services:
    config: OracleConfig
    oracle: Oracle
    scheduler: RunScheduler
    analyzer: OracleAnalyzer
    recomposer: OracleRecomposer
    controller: RoundController


def build_services(
    config: OracleConfig | None = None, oracle: Oracle | None = None
) -> Services:
    """Build the scheduler, collaborators and round controller.

    ``oracle`` replaces the configured backend, mainly for tests.
    """
    config = config or load_oracle_config()
    oracle = oracle or build_oracle(config)
    scheduler = RunScheduler(oracle, config)
    analyzer = OracleAnalyzer(oracle, config)
    recomposer = OracleRecomposer(oracle, config)
    controller = RoundController(scheduler, analyzer, recomposer)
    return Services(
        config=config,
        oracle=oracle,
        scheduler=scheduler,
        analyzer=analyzer,
        recomposer=recomposer,
        controller=controller,
    )
