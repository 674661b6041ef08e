'''
Shared fixtures for the hl7Send and postXML tests
'''

import os
import sys

import pytest
import hl7

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

SAMPLE_ORM = (
    'MSH|^~\\&|SND|SFAC|RCV|RFAC|20200101120000||ORM^O01|MSG00001|P|2.5\n'
    'PID|1||123^^^HOSP^MR~456^^^SSA^SS||Doe^John||19800101|M\n'
    'ORC|NW|ORD1\n'
    'OBX|1|ST|A||first\n'
    'OBX|2|ST|B||second\n'
)


def ackText(code, controlId='MSG00001'):
    '''
    An ACK with the given acknowledgement code
    '''
    return ('MSH|^~\\&|RCV|RFAC|SND|SFAC|20200101120001||ACK^O01|ACK0001|P|2.5\r'
            f'MSA|{code}|{controlId}')


class FakeTransport:
    '''
    Answers each message with the next acknowledgement code and records what was sent
    '''

    def __init__(self, *codes):
        self.codes = list(codes)
        self.sent = []

    def __call__(self, message):
        self.sent.append(str(message))
        code = self.codes.pop(0)
        if code is None:
            return hl7.parse('MSH|^~\\&|RCV|RFAC|SND|SFAC|20200101120001||ACK^O01|ACK0001|P|2.5')
        if isinstance(code, Exception):
            raise code
        return hl7.parse(ackText(code))


@pytest.fixture
def orm():
    return hl7.parse(SAMPLE_ORM.replace('\n', '\r').rstrip('\r'))


@pytest.fixture
def messageFiles(tmp_path):
    '''
    Two message files, with Unix line endings
    '''
    names = []
    for i in range(2):
        path = tmp_path / f'message{i + 1:d}.hl7'
        path.write_text(SAMPLE_ORM, encoding='utf-8')
        names.append(str(path))
    return names
