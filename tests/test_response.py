from pydantic import BaseModel

from app.utils.response import success_response, error_response


class _Item(BaseModel):
    id: str
    title: str


def test_success_response_with_data():
    result = success_response(data={"key": "value"})
    assert result == {"status": "success", "data": {"key": "value"}, "message": None}


def test_success_response_with_message():
    result = success_response(data=None, message="Photo deleted")
    assert result == {"status": "success", "data": None, "message": "Photo deleted"}


def test_success_response_dumps_models():
    result = success_response(data={"items": [_Item(id="s-1", title="Enhance Lighting")]})
    assert result["data"] == {"items": [{"id": "s-1", "title": "Enhance Lighting"}]}


def test_error_response():
    result = error_response("Invalid image format")
    assert result == {"status": "error", "data": None, "message": "Invalid image format"}


def test_error_response_with_data():
    result = error_response("Missing API key", data={"key": "FAL_API_KEY"})
    assert result == {"status": "error", "data": {"key": "FAL_API_KEY"}, "message": "Missing API key"}
