#Description: Background scheduler persisting ledger snapshots and refreshing the strategy report periodically.
from apscheduler.schedulers.background import BackgroundScheduler

from utils.logging import logger
from utils.config import settings
from services.portfolio import PortfolioService
from ai.strategy_report import StrategyReportService

_scheduler: BackgroundScheduler | None = None
_report_service: StrategyReportService | None = None

def snapshot_job():
    try:
        PortfolioService.instance().save_snapshot()
    except Exception as e:
        logger.exception(f"Snapshot job failed: {e}")

def report_job():
    global _report_service
    try:
        if _report_service is None:
            _report_service = StrategyReportService()
        report = _report_service.generate()
        if report is not None:
            PortfolioService.instance().set_strategy_report(report)
    except Exception as e:
        logger.exception(f"Report job failed: {e}")

def start_scheduler(report_service: StrategyReportService | None = None):
    global _scheduler, _report_service
    if _scheduler:
        return _scheduler
    if report_service is not None:
        _report_service = report_service
    report_minutes = PortfolioService.instance().preferences.report_interval_min or settings.REPORT_INTERVAL_MINUTES
    _scheduler = BackgroundScheduler(timezone="UTC")
    _scheduler.add_job(snapshot_job, "interval", seconds=settings.SNAPSHOT_INTERVAL_SECONDS, id="snapshot_job", max_instances=1, coalesce=True)
    _scheduler.add_job(report_job, "interval", minutes=report_minutes, id="report_job", max_instances=1, coalesce=True)
    _scheduler.start()
    logger.info("Scheduler started.")
    return _scheduler

def stop_scheduler():
    global _scheduler
    if _scheduler:
        _scheduler.shutdown(wait=False)
        _scheduler = None

def get_scheduler():
    return _scheduler
