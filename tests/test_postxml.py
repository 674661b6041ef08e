'''
Converting and POSTing XML documents
'''

import io

import pytest
import requests

import postXML
from postXML import PostXMLError, postDocuments, splitArguments

ORDER = '''<?xml version="1.0" encoding="UTF-8"?>
<order id="1">
  <status>OLD</status>
  <item code="A">first</item>
  <item code="B">second</item>
</order>
'''


class FakeResponse:
    def __init__(self, status_code=200, text='OK'):
        self.status_code = status_code
        self.text = text


class FakePost:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def __call__(self, url, data=None, headers=None, timeout=None):
        self.calls.append({'url': url, 'data': data, 'headers': headers, 'timeout': timeout})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def orderFile(tmp_path):
    path = tmp_path / 'order.xml'
    path.write_text(ORDER, encoding='utf-8')
    return str(path)


def post(monkeypatch, fileNames, conversions, *responses, **kwargs):
    fake = FakePost(*responses)
    monkeypatch.setattr(postXML.requests, 'post', fake)
    out = io.StringIO()
    status = postDocuments(fileNames, 'http://example.org/orders', conversions, out=out, **kwargs)
    return status, fake, out.getvalue()


def test_post_with_conversions(monkeypatch, orderFile):
    conversions = [('./status', 'NEW'), ('./item/@code', 'Z'), ('/order/@id', '2')]
    status, fake, out = post(monkeypatch, [orderFile], conversions, FakeResponse(), timeout=3.0)
    assert status == postXML.EX_OK
    call = fake.calls[0]
    assert call['url'] == 'http://example.org/orders'
    assert call['headers'] == {'Content-Type': 'text/plain'}
    assert call['timeout'] == 3.0
    body = call['data'].decode('utf-8')
    assert body.startswith('<?xml')
    assert '<status>NEW</status>' in body
    assert body.count('code="Z"') == 2
    assert 'id="2"' in body
    assert f'POSTing {orderFile}' in out
    assert 'Setting ./status from OLD to NEW [Match 1 of 1]' in out
    assert 'Setting ./item/@code from B to Z [Match 2 of 2]' in out


def test_text_and_descendant_paths(monkeypatch, orderFile):
    status, fake, out = post(monkeypatch, [orderFile], [('.//item[@code="B"]/text()', 'changed')], FakeResponse())
    body = fake.calls[0]['data'].decode('utf-8')
    assert '<item code="B">changed</item>' in body
    assert '<item code="A">first</item>' in body


def test_no_match_is_skipped(monkeypatch, orderFile):
    status, fake, out = post(monkeypatch, [orderFile], [('./missing', 'X'), ('/other/status', 'X')], FakeResponse())
    assert status == postXML.EX_OK
    assert 'Setting' not in out
    assert '<status>OLD</status>' in fake.calls[0]['data'].decode('utf-8')


def test_attributes_anywhere(monkeypatch, orderFile):
    status, fake, out = post(monkeypatch, [orderFile], [('//@code', 'Z')], FakeResponse())
    body = fake.calls[0]['data'].decode('utf-8')
    assert body.count('code="Z"') == 2
    assert 'Setting //@code from A to Z [Match 1 of 2]' in out


def test_xpath_functions(monkeypatch, orderFile):
    conversions = [("//item[contains(@code,'A')]", 'X'), ('//item[last()]/@code', 'L')]
    status, fake, out = post(monkeypatch, [orderFile], conversions, FakeResponse())
    body = fake.calls[0]['data'].decode('utf-8')
    assert '<item code="A">X</item>' in body
    assert '<item code="L">second</item>' in body


def test_default_namespace(monkeypatch, tmp_path):
    path = tmp_path / 'ns.xml'
    path.write_text('<order xmlns="urn:example:orders"><status>OLD</status></order>', encoding='utf-8')
    status, fake, out = post(monkeypatch, [str(path)], [("/*/*[local-name()='status']", 'NEW')], FakeResponse())
    body = fake.calls[0]['data'].decode('utf-8')
    assert '<order xmlns="urn:example:orders"><status>NEW</status></order>' in body


def test_prefixed_namespace(monkeypatch, tmp_path):
    path = tmp_path / 'ns1.xml'
    path.write_text('<ns1:order xmlns:ns1="urn:example:orders"><ns1:status>OLD</ns1:status></ns1:order>', encoding='utf-8')
    status, fake, out = post(monkeypatch, [str(path)], [('/ns1:order/ns1:status', 'NEW')], FakeResponse())
    assert status == postXML.EX_OK
    body = fake.calls[0]['data'].decode('utf-8')
    assert '<ns1:order xmlns:ns1="urn:example:orders"><ns1:status>NEW</ns1:status></ns1:order>' in body


def test_comments_and_processing_instructions_kept(monkeypatch, tmp_path):
    path = tmp_path / 'commented.xml'
    path.write_text('<?xml version="1.0"?>\n<?xml-stylesheet href="order.xsl"?>\n<!-- header -->\n'
                    '<order><!-- keep me --><status>OLD</status></order>', encoding='utf-8')
    status, fake, out = post(monkeypatch, [str(path)], [('./status', 'NEW')], FakeResponse())
    body = fake.calls[0]['data'].decode('utf-8')
    assert '<?xml-stylesheet href="order.xsl"?>' in body
    assert '<!-- header -->' in body
    assert '<order><!-- keep me --><status>NEW</status></order>' in body


@pytest.mark.parametrize('xpath', ['./item[', '/undeclared:order', 'count(//item)', "string(./status)"])
def test_invalid_xpath(monkeypatch, orderFile, xpath):
    with pytest.raises(PostXMLError) as e:
        post(monkeypatch, [orderFile], [(xpath, 'X')], FakeResponse())
    assert e.value.exitCode == postXML.EX_DATAERR


def test_bad_status_stops_the_batch(monkeypatch, orderFile):
    with pytest.raises(PostXMLError) as e:
        post(monkeypatch, [orderFile, orderFile], [], FakeResponse(500, 'Server Error'), FakeResponse())
    assert e.value.exitCode == postXML.EX_PROTOCOL
    assert str(e.value) == 'ERROR: Got response 500'


def test_connection_error(monkeypatch, orderFile):
    with pytest.raises(PostXMLError) as e:
        post(monkeypatch, [orderFile], [], requests.ConnectionError('refused'))
    assert e.value.exitCode == postXML.EX_UNAVAILABLE


def test_not_xml(monkeypatch, tmp_path):
    path = tmp_path / 'junk.xml'
    path.write_text('not xml', encoding='utf-8')
    with pytest.raises(PostXMLError) as e:
        post(monkeypatch, [str(path)], [], FakeResponse())
    assert e.value.exitCode == postXML.EX_DATAERR


def test_split_arguments(orderFile):
    conversions, fileNames = splitArguments(["./item[@code='A']=X", './status=', orderFile])
    assert conversions == [("./item[@code='A']", 'X'), ('./status', '')]
    assert fileNames == [orderFile]


def test_split_arguments_errors(orderFile, tmp_path):
    with pytest.raises(PostXMLError) as e:
        splitArguments([orderFile, './status=NEW'])
    assert e.value.exitCode == postXML.EX_USAGE
    with pytest.raises(PostXMLError) as e:
        splitArguments(['./status=NEW'])
    assert e.value.exitCode == postXML.EX_USAGE
    with pytest.raises(PostXMLError) as e:
        splitArguments([orderFile, str(tmp_path / 'missing.xml')])
    assert e.value.exitCode == postXML.EX_NOINPUT


def test_main(monkeypatch, orderFile, capsys):
    fake = FakePost(FakeResponse(text='accepted'))
    monkeypatch.setattr(postXML.requests, 'post', fake)
    assert postXML.main(['-u', 'http://example.org/orders', '-C', 'application/xml', './status=NEW', orderFile]) == postXML.EX_OK
    assert fake.calls[0]['headers'] == {'Content-Type': 'application/xml'}
    assert 'accepted' in capsys.readouterr().out


def test_setup_logging_truncates_the_log_file(tmp_path, monkeypatch):
    logFile = tmp_path / 'postXML.log'
    logFile.write_text('from the last run\n', encoding='utf-8')
    calls = []
    monkeypatch.setattr(postXML.logging, 'basicConfig', lambda **kwargs: calls.append(kwargs))
    postXML.setupLogging('postXML', 3, str(tmp_path), 'postXML.log')
    assert logFile.read_text(encoding='utf-8') == ''
    assert calls == [{'format': 'postXML [%(asctime)s]: %(message)s', 'datefmt': '%d/%m/%y %H:%M:%S %p',
                      'level': postXML.logging.INFO, 'filename': str(logFile)}]
