import json

import pytest
import requests

from database.remote import AppsScriptClient, RemoteError


class FakeResponse:

    def __init__(self, body=None, status=200, text=None):
        self.body = body
        self.status_code = status
        self.text = text

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f'{self.status_code} error')

    def json(self):
        if self.text is not None:
            return json.loads(self.text)
        return self.body


class FakeHttp:

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def _call(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        if self.error:
            raise self.error
        return self.response

    def get(self, url, **kwargs):
        return self._call('GET', url, **kwargs)

    def post(self, url, **kwargs):
        return self._call('POST', url, **kwargs)

    def close(self):
        pass


URL = 'https://script.google.com/macros/s/abc/exec'


def test_trailing_slash_is_dropped():
    assert AppsScriptClient(URL + '/').url == URL
    assert not AppsScriptClient('  ').configured


def test_fetch_all_returns_sheets():
    http = FakeHttp(FakeResponse({'status': 'success', 'data': {'Students': [{'id': '1'}]}}))
    client = AppsScriptClient(URL, timeout=3, session=http)
    assert client.fetch_all() == {'Students': [{'id': '1'}]}
    method, url, kwargs = http.calls[0]
    assert (method, url) == ('GET', URL)
    assert kwargs['params']['action'] == 'sync'
    assert kwargs['timeout'] == 3


@pytest.mark.parametrize('response,error', [
    (FakeResponse({'status': 'error', 'message': 'no sheet'}), None),
    (FakeResponse(text='<html>login</html>'), None),
    (FakeResponse(status=500), None),
    (None, requests.ConnectionError('down')),
])
def test_fetch_failures_raise_remote_error(response, error):
    client = AppsScriptClient(URL, session=FakeHttp(response, error))
    with pytest.raises(RemoteError):
        client.fetch_all()


def test_send_posts_plain_text_json():
    http = FakeHttp(FakeResponse({'status': 'success'}))
    client = AppsScriptClient(URL, session=http)
    client.send('update', 'Students', {'id': 's1', 'name': 'A'}, 's1')
    method, _, kwargs = http.calls[0]
    assert method == 'POST'
    assert kwargs['headers']['Content-Type'].startswith('text/plain')
    assert json.loads(kwargs['data']) == {'action': 'update', 'sheet': 'Students',
                                          'payload': {'id': 's1', 'name': 'A'}, 'id': 's1'}


def test_send_validates_action_and_sheet():
    client = AppsScriptClient(URL, session=FakeHttp())
    with pytest.raises(ValueError):
        client.send('upsert', 'Students', {})
    with pytest.raises(ValueError):
        client.send('create', 'Teachers', {})


def test_send_without_url_is_a_no_op():
    http = FakeHttp()
    AppsScriptClient('', session=http).send('create', 'Results', {})
    assert http.calls == []


def test_send_transport_failure_raises_remote_error():
    client = AppsScriptClient(URL, session=FakeHttp(error=requests.Timeout('slow')))
    with pytest.raises(RemoteError):
        client.send('create', 'Results', {}, 'r1')
