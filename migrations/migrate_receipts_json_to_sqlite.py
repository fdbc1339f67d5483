"""
JSON 기반 실행 영수증 파일을 SQLite Outbox로 마이그레이션하는 스크립트.

온체인 실행은 성공했지만 완료 기록이 남지 않은 영수증을
{"<rule_id>_<public_key>[_<update_id>]": "<transaction_hash>"} 형식의 JSON에서 읽어
SQLiteOutbox에 넣습니다. 이후 엔진이 새로고침할 때 완료 처리가 재시도됩니다.
"""

import json
import sys
import asyncio
from pathlib import Path
from typing import Optional, Tuple
from geolink.adapters.storage.sqlite_outbox import SQLiteOutbox
from geolink.observability.logging_setup import get_logger

log = get_logger("geolink.migrate")


def parse_receipt_key(key: str) -> Tuple[int, str, Optional[int]]:
    """
    영수증 키를 (rule_id, public_key, update_id)로 분해합니다.

    Raises:
        ValueError: 키 형식이 잘못된 경우
    """
    parts = key.split("_")
    if len(parts) == 2:
        return int(parts[0]), parts[1], None
    if len(parts) == 3:
        return int(parts[0]), parts[1], int(parts[2])
    raise ValueError(f"unexpected receipt key: {key}")


async def migrate(json_path: str, sqlite_path: str):
    """
    JSON 영수증 파일을 SQLite Outbox로 마이그레이션합니다.

    Args:
        json_path: JSON 영수증 파일 경로
        sqlite_path: SQLite Outbox 데이터베이스 파일 경로
    """
    # JSON 파일 존재 확인
    json_file = Path(json_path)
    if not json_file.exists():
        log.error(f"JSON 파일이 존재하지 않습니다: {json_path}")
        return False

    outbox = SQLiteOutbox(sqlite_path)
    await outbox.init()

    try:
        with open(json_path, "r", encoding="utf-8") as f:
            data = json.load(f)
        log.info(f"JSON 파일 로드 완료: {json_path}, 항목 수: {len(data)}")
    except Exception as e:
        log.error(f"JSON 파일 읽기 실패: {e}")
        return False

    count = 0
    skipped = 0
    errors = 0
    before = await outbox.get_count()

    for key, tx in data.items():
        if not tx:
            # 트랜잭션이 없으면 온체인 효과도 없음
            skipped += 1
            continue
        try:
            rule_id, public_key, update_id = parse_receipt_key(key)
            await outbox.enqueue(rule_id, public_key, update_id, str(tx))
            count += 1
        except Exception as e:
            log.error(f"영수증 '{key}' 마이그레이션 실패: {e}")
            errors += 1

    final_count = await outbox.get_count()
    log.info(f"마이그레이션 완료:")
    log.info(f"  - 처리: {count}개 (신규 {final_count - before}개)")
    log.info(f"  - 건너뜀 (트랜잭션 없음): {skipped}개")
    log.info(f"  - 에러: {errors}개")
    log.info(f"  - 대상 SQLite 파일: {sqlite_path}")

    return errors == 0


async def main():
    """메인 함수"""
    if len(sys.argv) < 3:
        print("사용법: python migrate_receipts_json_to_sqlite.py <json_file> <sqlite_file>")
        print("예시: python migrate_receipts_json_to_sqlite.py /data/receipts.json /data/outbox.db")
        sys.exit(1)

    json_path = sys.argv[1]
    sqlite_path = sys.argv[2]

    print(f"마이그레이션 시작:")
    print(f"  - JSON 파일: {json_path}")
    print(f"  - SQLite 파일: {sqlite_path}")
    print()

    try:
        success = await migrate(json_path, sqlite_path)
        if success:
            print("마이그레이션이 성공적으로 완료되었습니다.")
            sys.exit(0)
        else:
            print("마이그레이션 중 오류가 발생했습니다.")
            sys.exit(1)
    except Exception as e:
        print(f"마이그레이션 실패: {e}")
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
