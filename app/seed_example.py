from datetime import datetime, timezone

from app.config import settings
from app.db import init_db
from app.models import ItemStatus, ItemType
from app.schemas import Dataset, Item, ManualRequest, Sheet
from app.services.manual_request_service import mirror_item_for
from app.services.payload_codec import encode_payload
from app.services.provider_factory import get_remote_store


def demo_dataset() -> Dataset:
    request = ManualRequest(
        id='REQ-DEMO00000001',
        project='LINHA 2 EXTRUSORA',
        code='ROL-6205',
        description='ROLAMENTO 6205 2RS',
        quantity=4,
        brand='SKF',
        type=ItemType.COMMERCIAL,
        timestamp='01/03/2026',
    )
    sheet = Sheet(
        id='PRJ-DEMO00000001',
        name='LINHA 2 EXTRUSORA',
        created_date='01/03/2026',
        items=[
            mirror_item_for(request),
            Item(
                id='LINHA 2 EXTRUSORA-0-demo',
                sheet_name='ESTRUTURA',
                assembly='BASE',
                part_number='EX-100-01',
                description='CHAPA ACO 1020 6MM',
                quantity=2,
                unit='PC',
                type=ItemType.MANUFACTURED,
                supplier='METALURGICA NORTE',
                status=ItemStatus.PURCHASED,
                order_number='PO-4411',
                expected_arrival='2026-03-20',
            ),
            Item(
                id='LINHA 2 EXTRUSORA-1-demo',
                sheet_name='ACIONAMENTO',
                assembly='MOTOR',
                part_number='WEG-W22',
                description='MOTOR TRIFASICO 5CV',
                quantity=1,
                type=ItemType.COMMERCIAL,
                brand='WEG',
            ),
        ],
    )
    return Dataset(sheets=[sheet], manual_requests=[request])


def seed() -> None:
    store = get_remote_store()
    init_db()
    if store.fetch(settings.document_id) is not None:
        return
    store.upsert(settings.document_id, encode_payload(demo_dataset()), datetime.now(tz=timezone.utc))


if __name__ == '__main__':
    seed()
    print('Seed data inserted/verified.')
