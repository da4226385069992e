import datetime
import io

import pytest
from botocore.exceptions import ClientError
from PIL import Image

from domain.errors import DependencyError, ForbiddenError, NotFoundError, RateLimitExceeded, ValidationError
from domain.models import BoxPosition, TextPosition, TicketTemplate
from services import event_service, registration_service, s3_service, ticket_service
from utils import ticket_utils

T0 = datetime.datetime(2026, 9, 5, 12, 0, 0)


def _image(data):
    return Image.open(io.BytesIO(data))


def test_plain_ticket_card():
    png = ticket_utils.render_ticket_png(TicketTemplate(), token="tok-123456", name="Meera", reg_no="R1",
                                         event_title="Onam Fest")
    img = _image(png)
    assert img.format == "PNG"
    assert img.size == (600, 800)


def test_template_ticket_with_rotation(tmp_path, monkeypatch):
    Image.new("RGB", (1000, 400), "navy").save(tmp_path / "ticket.png")
    monkeypatch.setattr(ticket_utils, "TEMPLATE_ROOT", tmp_path)
    template = TicketTemplate(
        image_path="/ticket.png",
        qr_position=BoxPosition(x=700, y=50, width=250, height=250),
        name_position=TextPosition(x=40, y=200, font_size=40, color="#ffffff"),
        reg_no_position=TextPosition(x=40, y=260),
    )

    img = _image(ticket_utils.render_ticket_png(template, token="tok-123456", name="Meera", reg_no="R1"))
    assert img.size == (1000, 400)
    # the QR quiet zone is white where the template was navy
    assert img.convert("RGB").getpixel((702, 52)) == (255, 255, 255)

    template.rotate = True
    rotated = _image(ticket_utils.render_ticket_png(template, token="tok-123456", name="Meera", reg_no="R1"))
    assert rotated.size == (400, 1000)


def test_missing_template_image(tmp_path, monkeypatch):
    monkeypatch.setattr(ticket_utils, "TEMPLATE_ROOT", tmp_path)
    with pytest.raises(ValidationError, match="not found"):
        ticket_utils.render_ticket_png(TicketTemplate(image_path="nope.png"), token="t", name="n", reg_no="r")


def test_template_path_cannot_leave_template_root(tmp_path, monkeypatch):
    root = tmp_path / "public"
    root.mkdir()
    Image.new("RGB", (10, 10), "white").save(tmp_path / "secret.png")
    monkeypatch.setattr(ticket_utils, "TEMPLATE_ROOT", root)

    with pytest.raises(ValidationError, match="outside the template folder"):
        ticket_utils.resolve_template_path("../secret.png")


def _dark_pixels(img, box):
    region = img.convert("L").crop(box)
    return sum(1 for p in region.getdata() if p < 128)


def test_template_without_positions_gets_default_qr(tmp_path, monkeypatch):
    Image.new("RGB", (400, 400), "white").save(tmp_path / "t.png")
    monkeypatch.setattr(ticket_utils, "TEMPLATE_ROOT", tmp_path)

    img = _image(ticket_utils.render_ticket_png(TicketTemplate(image_path="t.png"), token="tok-123456",
                                                name="Meera", reg_no="R1"))
    assert _dark_pixels(img, (50, 50, 250, 250)) > 1000
    # name text under the QR
    assert _dark_pixels(img, (50, 270, 250, 310)) > 0
    # nothing outside the default boxes
    assert _dark_pixels(img, (300, 0, 400, 400)) == 0

def test_qr_content_with_verifier_base(monkeypatch):
    monkeypatch.setattr(ticket_utils, "TICKET_QR_URL_BASE", None)
    assert ticket_utils.qr_content_for("abc") == "abc"
    monkeypatch.setattr(ticket_utils, "TICKET_QR_URL_BASE", "https://verify.example.com/scan?src=qr")
    assert ticket_utils.qr_content_for("abc") == "https://verify.example.com/scan?src=qr&token=abc"


def test_retrieve_ticket_assigns_token_once(engine, event, make_registrations):
    reg = make_registrations(event.id, 1)[0]

    first = ticket_service.retrieve_ticket(engine, event.id, "GUEST1@example.com", "9876543210", now=T0)
    assert first.content_type == "image/png"
    assert first.filename == "Guest_1_Onam_Fest.png"
    assert _image(first.data).format == "PNG"
    token = registration_service.get_registration(engine, reg.id).token
    assert token

    ticket_service.retrieve_ticket(engine, event.id, "guest1@example.com", "9876543210",
                                   now=T0 + datetime.timedelta(seconds=5))
    assert registration_service.get_registration(engine, reg.id).token == token


def test_retrieve_ticket_rate_limited(engine, event, make_registrations):
    make_registrations(event.id, 1)
    for s in (0, 1):
        ticket_service.retrieve_ticket(engine, event.id, "guest1@example.com", "9876543210",
                                       now=T0 + datetime.timedelta(seconds=s))
    with pytest.raises(RateLimitExceeded) as exc:
        ticket_service.retrieve_ticket(engine, event.id, "guest1@example.com", "9876543210",
                                       now=T0 + datetime.timedelta(seconds=2))
    assert exc.value.retry_after == 58.0
    assert exc.value.status_code == 429


def test_retrieve_ticket_guards(engine, event, other_event, make_registrations):
    make_registrations(event.id, 1)
    make_registrations(other_event.id, 1)

    with pytest.raises(ValidationError):
        ticket_service.retrieve_ticket(engine, event.id, "guest1@example.com", "", now=T0)
    with pytest.raises(NotFoundError):
        ticket_service.retrieve_ticket(engine, event.id, "guest1@example.com", "0000000", now=T0)
    with pytest.raises(ForbiddenError):
        ticket_service.retrieve_ticket(engine, other_event.id, "guest1@example.com", "9876543210", now=T0)

    event_service.set_public_download(engine, other_event.id, True)
    assert ticket_service.retrieve_ticket(engine, other_event.id, "guest1@example.com", "9876543210", now=T0)


class FakeS3:
    def __init__(self, fail=False):
        self.fail = fail
        self.objects = {}

    def put_object(self, Bucket, Key, Body, **extra):
        if self.fail:
            raise ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject")
        self.objects[(Bucket, Key)] = (Body, extra)

    def generate_presigned_url(self, op, Params, ExpiresIn):
        return f"https://signed.example.com/{Params['Key']}?ttl={ExpiresIn}"


@pytest.fixture
def fake_s3(monkeypatch):
    def _install(fail=False):
        client = FakeS3(fail)
        monkeypatch.setattr(s3_service, "S3_BUCKET", "tickets-bucket")
        monkeypatch.setattr(s3_service, "S3_USE_PRESIGNED", True)
        monkeypatch.setattr(s3_service, "_s3_client", client)
        return client
    return _install


def test_retrieve_ticket_archives_to_s3(engine, event, make_registrations, fake_s3):
    reg = make_registrations(event.id, 1)[0]
    client = fake_s3()

    artifact = ticket_service.retrieve_ticket(engine, event.id, "guest1@example.com", "9876543210", now=T0)

    key = f"tickets/{event.id}/{reg.id}_Guest_1_Onam_Fest.png"
    body, extra = client.objects[("tickets-bucket", key)]
    assert body == artifact.data
    assert extra["ContentType"] == "image/png"
    assert artifact.url.startswith(f"https://signed.example.com/{key}")


def test_archive_failure_does_not_block_download(engine, event, make_registrations, fake_s3):
    make_registrations(event.id, 1)
    fake_s3(fail=True)
    artifact = ticket_service.retrieve_ticket(engine, event.id, "guest1@example.com", "9876543210", now=T0)
    assert artifact.data
    assert artifact.url is None


def test_retrieve_ticket_with_bare_template_has_qr(engine, event, make_registrations, tmp_path, monkeypatch):
    Image.new("RGB", (400, 400), "white").save(tmp_path / "t.png")
    monkeypatch.setattr(ticket_utils, "TEMPLATE_ROOT", tmp_path)
    event_service.set_ticket_template(engine, event.id, TicketTemplate(image_path="t.png"))
    make_registrations(event.id, 1)

    artifact = ticket_service.retrieve_ticket(engine, event.id, "guest1@example.com", "9876543210", now=T0)
    assert _dark_pixels(_image(artifact.data), (50, 50, 250, 250)) > 1000


def test_missing_template_does_not_use_download_quota(engine, event, make_registrations, tmp_path, monkeypatch):
    monkeypatch.setattr(ticket_utils, "TEMPLATE_ROOT", tmp_path)
    event_service.set_ticket_template(engine, event.id, TicketTemplate(image_path="gone.png"))
    reg = make_registrations(event.id, 1)[0]

    with pytest.raises(ValidationError):
        ticket_service.retrieve_ticket(engine, event.id, "guest1@example.com", "9876543210", now=T0)

    stored = registration_service.get_registration(engine, reg.id)
    assert stored.rate_limit_count == 0
    assert stored.token is None


def test_unreadable_template_is_a_dependency_error(engine, event, make_registrations, tmp_path, monkeypatch):
    (tmp_path / "t.png").write_bytes(b"not an image")
    monkeypatch.setattr(ticket_utils, "TEMPLATE_ROOT", tmp_path)
    event_service.set_ticket_template(engine, event.id, TicketTemplate(image_path="t.png"))
    make_registrations(event.id, 1)

    with pytest.raises(DependencyError) as exc:
        ticket_service.retrieve_ticket(engine, event.id, "guest1@example.com", "9876543210", now=T0)
    assert exc.value.status_code == 502
    assert exc.value.stage == "artifact"
