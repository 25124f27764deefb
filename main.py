"""애플리케이션 진입점 (DI Container 기반)

시장 데이터 저장 컨슈머
- Kafka 에서 ticker/trade/orderbook 이벤트 수신
- 검증/매핑 후 DB 에 멱등 저장
- 실패 메시지는 재시도 후 DLQ 로 격리

Usage:
    python main.py                              # 개발 환경 (config/.env)
    DB_CREATE_SCHEMA=true python main.py        # 시작 시 테이블 생성
"""

import asyncio
import contextlib
import signal

from market_persister.application.consumer_app import PersisterApplication
from market_persister.common.logger import PipelineLogger
from market_persister.config.containers import ApplicationContainer
from market_persister.config.settings import app_settings

logger = PipelineLogger.get_logger("main", "app")


class Application:
    """애플리케이션 메인 클래스

    책임:
    - DI Container 관리 (Resource 초기화/정리)
    - SIGINT/SIGTERM 처리
    - Graceful Shutdown (수신 중단 → 소진 → DLQ flush → Consumer close → 엔진 정리)
    """

    def __init__(self) -> None:
        self.container = ApplicationContainer()
        self.app: PersisterApplication | None = None

    async def initialize(self) -> None:
        logger.info(
            "시장 데이터 저장 컨슈머 시작 (DI 모드)",
            extra={"environment": app_settings.environment},
        )

        logger.info("Resource 초기화 시작...")
        await self.container.init_resources()
        logger.info("✅ 모든 Resource 초기화 완료")

        self.app = await self.container.app()

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            # Windows 이벤트 루프는 미지원
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, self._on_signal, sig)

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info(f"종료 시그널 수신: {sig.name}")
        if self.app is not None:
            self.app.request_stop()

    async def run(self) -> None:
        if self.app is None:
            raise RuntimeError("application not initialized")
        await self.app.start()
        logger.info("✅ 소비 시작, 종료 시그널 대기 중...")
        await self.app.run_until_stopped()

    async def shutdown(self) -> None:
        logger.info("정리 작업 시작...")
        if self.app is not None:
            await self.app.shutdown()

        logger.info("모든 Resource 종료 중...")
        await self.container.shutdown_resources()
        logger.info("✅ 프로그램 종료 완료")


async def main() -> None:
    """메인 실행 함수"""
    application = Application()

    try:
        await application.initialize()
        application.install_signal_handlers()
        await application.run()
    finally:
        await application.shutdown()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n프로그램이 종료되었습니다.")
