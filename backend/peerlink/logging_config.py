"""로깅 설정 모듈.

릴레이 서버(app.py)와 명령행 클라이언트(peer_client.py)가 시작 시 한 번
호출합니다. 라이브러리 모듈은 핸들러를 설정하지 않고 모듈별
logging.getLogger(__name__)만 사용합니다.

    - 콘솔 출력 + logs/{prefix}_YYYYMMDD.log 파일 저장
    - LOG_LEVEL 환경변수로 레벨 제어 (기본 INFO)
    - LOG_RETENTION_DAYS보다 오래된 로그 파일 정리

사용 예시:
    from peerlink.logging_config import setup_logging

    setup_logging("relay")
"""

import logging
import os
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DIR = Path(os.getenv("LOG_DIR", "logs"))

# 로그 보관 기간 (일) - 기본 60일 (2개월)
LOG_RETENTION_DAYS = int(os.getenv("LOG_RETENTION_DAYS", "60"))

# 파일명 접두사 (relay_YYYYMMDD.log, client_YYYYMMDD.log)
LOG_PREFIXES = ("relay", "client")


def setup_logging(prefix: str, level: Optional[str] = None, log_dir: Path = LOG_DIR) -> Path:
    """콘솔과 날짜별 파일로 로그를 남기도록 루트 로거를 설정합니다.

    Args:
        prefix: 로그 파일명 접두사 ("relay" 또는 "client")
        level: 로그 레벨 (기본: LOG_LEVEL 환경변수)
        log_dir: 로그 디렉토리

    Returns:
        Path: 오늘 날짜 로그 파일 경로
    """
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"{prefix}_{datetime.now().strftime('%Y%m%d')}.log"

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler(),  # 콘솔 출력
            logging.FileHandler(log_file, encoding="utf-8"),  # 파일 저장
        ],
    )

    # ICE/DTLS 패킷 단위 로그 억제
    for noisy in ("aioice", "aiortc.rtcdtlstransport", "websockets.client", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(f"로깅 초기화 완료: level={level}, file={log_file}")
    return log_file


def cleanup_old_logs(
    log_dir: Path = LOG_DIR,
    retention_days: int = LOG_RETENTION_DAYS,
    prefixes: Iterable[str] = LOG_PREFIXES,
) -> int:
    """보관 기간이 지난 로그 파일을 삭제합니다.

    Returns:
        int: 삭제된 파일 수
    """
    if not log_dir.exists():
        return 0

    cutoff = datetime.now() - timedelta(days=retention_days)
    deleted = 0
    for prefix in prefixes:
        for log_file in log_dir.glob(f"{prefix}_*.log"):
            try:
                logged_on = datetime.strptime(log_file.stem[len(prefix) + 1:], "%Y%m%d")
            except ValueError:
                continue
            if logged_on >= cutoff:
                continue
            try:
                log_file.unlink()
            except OSError:
                continue
            deleted += 1
    return deleted
