# pylint: disable=line-too-long
'''
Script hl7Send.py
A script to send one or more HL7 v2.x vertical bar messages, read from files, to an HL7 listener using MLLP
and check the acknowledgement that comes back.

Each message is updated with a unique Message Control Id (MSH-10) and the current timestamp (MSH-7)
before it is sent. Field specifications on the command line (e.g. ORC-2=2342) set the contents of
any other field in the message.

Files containing HL7 messages can be terminated with standard Unix newline '\\n' and the script will
replace them with HL7 segment terminators '\\r'.


    SYNOPSIS
    $ python hl7Send.py -p port [-H hostname|--hostname=hostname]
        [-i|--no-id] [-t|--no-timestamp]
        [-m|--show-message] [-r|--show-response]
        [-c|--continue-on-ack-error] [-n|--no-send] [--no-root]
        [-T timeout|--timeout=timeout] [-E encoding|--encoding=encoding]
        [-v loggingLevel|--verbose=logingLevel]
        [-L logDir|--logDir=logDir]
        [-l logfile|--logfile=logfile]
        [field=value]... [-|filename]...


    REQUIRED
    -p port|--port=port
    The port of the HL7 listener.


    OPTIONS
    -H hostname|--hostname=hostname
    The host running the HL7 listener (default="localhost").

    -i|--no-id
    Do not generate a new Message Control Id (MSH-10).

    -t|--no-timestamp
    Do not update the message timestamp (MSH-7).

    -m|--show-message
    Show the text of each message that is sent.

    -r|--show-response
    Show the text of each ACK message.

    -c|--continue-on-ack-error
    Continue sending messages even if the ACK is a rejection or an error.

    -n|--no-send
    Show each message, but do not send it.

    --no-root
    Do not prepend the root prefix '/.' to the field specifications.

    -T timeout|--timeout=timeout
    The number of seconds to wait for an ACK (default=wait forever).

    -E encoding|--encoding=encoding
    The character encoding of the message files and on the wire (default="utf-8").

    -v loggingLevel|--verbose=loggingLevel
    Set the level of logging that you want.

    -L logDir|--logDir=logDir
    The directory where the log file will be created (default=".").

    -l logfile|--logfile=logfile
    The name of a log file where you want all messages captured.


    FIELD SPECIFICATIONS
    field=value arguments must come before the filenames and are applied in the order given.
    A field is SEG[(n)]-field[(rep)][-component[-subcomponent]], e.g. PID-3(2)-1 or OBX(2)-5,
    or SEG[(n)].Ffield[.Rrep[.Ccomponent[.Ssubcomponent]]], e.g. PID.F3.R1.C1
    If a repeating field is specified without a repetition then every repetition is set.
'''

# pylint: disable=invalid-name

import os
import sys
import logging
import argparse
import re
import datetime
import threading
import enum
from collections import namedtuple

import hl7
from hl7.client import MLLPClient

# This next section is plagurised from /usr/include/sysexits.h
EX_OK = 0               # successful termination
EX_WARN = 1             # non-fatal termination with warnings

EX_USAGE = 64           # command line usage error
EX_DATAERR = 65         # data format error
EX_NOINPUT = 66         # cannot open input
EX_UNAVAILABLE = 69     # service unavailable
EX_TEMPFAIL = 75        # temp failure; user is invited to retry
EX_PROTOCOL = 76        # remote error in protocol

ROOT_PREFIX = '/.'      # Anchor a field specification at the root of the message
SB = '\x0b'             # MLLP start block
EB = '\x1c'             # MLLP end block
CR = '\r'               # HL7 segment terminator

lineEnding = re.compile(r'\r\n|\r|\n')
overrideSpec = re.compile(r'^(.+?)=(.*)$', re.DOTALL)
terserPath = re.compile(r'^([A-Z][A-Z0-9]{2})(?:\((\d+)\))?-(\d+)(?:\((\d+)\))?(?:-(\d+)(?:-(\d+))?)?$')
accessorPath = re.compile(r'^([A-Z][A-Z0-9]{2})(?:\((\d+)\)|\[(\d+)\])?\.F?(\d+)(?:\.R?(\d+)(?:\.C?(\d+)(?:\.S?(\d+))?)?)?$', re.IGNORECASE)


class FieldPathError(ValueError):
    '''
    A field specification that cannot be parsed
    '''


class FieldNotFound(LookupError):
    '''
    A field specification that does not resolve to any existing part of the message
    '''


class HL7SendError(Exception):
    '''
    A condition that stops the whole batch
    '''
    def __init__(self, message, exitCode):
        super().__init__(message)
        self.exitCode = exitCode


class AckOutcome(enum.Enum):
    '''
    The outcome of a message, as reported by the MSA segment in the ACK
    '''
    ACCEPTED = 'ACCEPTED'
    REJECTED = 'REJECTED'
    ERROR = 'ERROR'
    MALFORMED = 'MALFORMED'


class FieldPath(namedtuple('FieldPath', ['segment', 'segmentNum', 'field', 'repeat', 'component', 'subcomponent', 'rooted'])):
    '''
    The address of a field, repetition, component or subcomponent in a message.
    All numbers are 1-based; repeat, component and subcomponent can be None.
    '''
    __slots__ = ()

    @classmethod
    def parse(cls, text):
        '''
        Parse a field specification - either HAPI Terser style (/.PID-3(1)-2) or python-hl7 style (PID.F3.R1.C2)
        '''
        path = text.strip()
        rooted = False
        if path.startswith(ROOT_PREFIX):
            rooted = True
            path = path[len(ROOT_PREFIX):]
        elif path.startswith('/'):
            rooted = True
            path = path[1:]
        if (match := terserPath.match(path)) is not None:
            segment, segmentNum, field, repeat, component, subcomponent = match.groups()
        elif (match := accessorPath.match(path)) is not None:
            segment, segmentNum, segmentIdx, field, repeat, component, subcomponent = match.groups()
            segment = segment.upper()
            segmentNum = segmentNum or segmentIdx
        else:
            raise FieldPathError(f'Invalid field specification "{text}"')
        numbers = [int(x) if x is not None else None for x in (segmentNum, field, repeat, component, subcomponent)]
        if any(x is not None and x < 1 for x in numbers):
            raise FieldPathError(f'Invalid field specification "{text}" - positions start at 1')
        segmentNum, field, repeat, component, subcomponent = numbers
        return cls(segment, segmentNum or 1, field, repeat, component, subcomponent, rooted)

    def __str__(self):
        path = ROOT_PREFIX if self.rooted else ''
        path += self.segment
        if self.segmentNum != 1:
            path += f'({self.segmentNum:d})'
        path += f'-{self.field:d}'
        if self.repeat is not None:
            path += f'({self.repeat:d})'
        if self.component is not None:
            path += f'-{self.component:d}'
            if self.subcomponent is not None:
                path += f'-{self.subcomponent:d}'
        return path


class ControlIdGenerator:
    '''
    Generate Message Control Ids - yyyyMMddHHmmssSSS followed by a three digit sequence number (modulo 100)
    '''

    def __init__(self, clock=datetime.datetime.now):
        self.clock = clock
        self.sequence = -1
        self.lock = threading.Lock()

    def next(self):
        '''
        The next control id
        '''
        with self.lock:
            self.sequence = (self.sequence + 1) % 100
            sequence = self.sequence
            now = self.clock()
        return now.strftime('%Y%m%d%H%M%S') + f'{now.microsecond // 1000:03d}{sequence:03d}'


def hl7Timestamp(now=None):
    '''
    Format a time as an HL7 DTM - YYYYMMDDHHMMSS.SSSS+ZZZZ
    '''
    if now is None:
        now = datetime.datetime.now().astimezone()
    return now.strftime('%Y%m%d%H%M%S') + f'.{now.microsecond // 100:04d}' + now.strftime('%z')


def encodingCharacters(message):
    '''
    The component and subcomponent separators the message was parsed with
    '''
    # separators is segment, field, repetition, component, subcomponent
    return message.separators[3], message.separators[4]


def resolveCells(message, fieldPath, create=False):
    '''
    Find every part of message addressed by fieldPath.
    Returns a list of (container, index) pairs, one for each cell that can be set.
    A plain string in the message is a leaf, which is its own first repetition, component and subcomponent.
    With create, missing fields, components and subcomponents are added as empty values.
    Segments and repetitions are never created, and are checked before anything is added.
    '''
    try:
        segments = message.segments(fieldPath.segment)
    except KeyError as e:
        raise FieldNotFound(f'No {fieldPath.segment} segment for {fieldPath}') from e
    if fieldPath.segmentNum > len(segments):
        raise FieldNotFound(f'Only {len(segments):d} {fieldPath.segment} segment(s) for {fieldPath}')
    segment = segments[fieldPath.segmentNum - 1]
    if fieldPath.field >= len(segment):
        if not create:
            raise FieldNotFound(f'No field {fieldPath.field:d} in {fieldPath.segment} segment for {fieldPath}')
        repeats = 1
    elif isinstance(segment[fieldPath.field], str):
        repeats = 1
    else:
        repeats = len(segment[fieldPath.field])
    if (fieldPath.repeat is not None) and (fieldPath.repeat > repeats):
        raise FieldNotFound(f'No repetition {fieldPath.repeat:d} for {fieldPath}')

    if create:
        compSep, subCompSep = encodingCharacters(message)
        while len(segment) <= fieldPath.field:
            segment.append('')
    cells = [(segment, fieldPath.field)]
    for level, position in (('repetition', fieldPath.repeat), ('component', fieldPath.component), ('subcomponent', fieldPath.subcomponent)):
        if position is None and level != 'repetition':
            break
        found = []
        for container, index in cells:
            node = container[index]
            if isinstance(node, str):
                if position in (None, 1):
                    found.append((container, index))
                    continue
                if not create:
                    raise FieldNotFound(f'No {level} {position:d} for {fieldPath}')
                # A leaf becomes the first of position values
                if level == 'component':
                    node = hl7.Repetition(compSep, [node])
                else:
                    node = hl7.Component(subCompSep, [node])
                container[index] = node
            if position is None:      # Every existing repetition
                found.extend((node, i) for i in range(len(node)))
                continue
            if position > len(node):
                if not create:
                    raise FieldNotFound(f'No {level} {position:d} for {fieldPath}')
                while len(node) < position:
                    node.append('')
            found.append((node, position - 1))
        cells = found
    return cells


def readField(message, path):
    '''
    The value(s) at a field specification
    '''
    fieldPath = path if isinstance(path, FieldPath) else FieldPath.parse(path)
    return [str(container[index]) for container, index in resolveCells(message, fieldPath)]


def applyOverride(message, path, value, rootRelative=True):
    '''
    Set every cell addressed by path to value, adding any missing fields, components or subcomponents.
    A missing segment or repetition raises FieldNotFound and leaves the message as it was.
    '''
    effectivePath = (ROOT_PREFIX + path) if rootRelative else path
    fieldPath = FieldPath.parse(effectivePath)
    cells = resolveCells(message, fieldPath, create=True)
    for container, index in cells:
        container[index] = value
    logging.debug('Set %s to "%s" [%d cell(s)]', fieldPath, value, len(cells))
    return cells


def setMSHfield(message, fieldNo, value):
    '''
    Set an MSH field, extending the MSH segment if it is too short
    '''
    msh = message.segment('MSH')
    while len(msh) <= fieldNo:
        msh.append('')
    msh[fieldNo] = value


def prepareMessage(message, generator, generateId=True, stampTimestamp=True, overrides=(), rootRelative=True, now=None):
    '''
    Stamp the message with a new control id and timestamp, then apply the field overrides in order
    '''
    if generateId:
        setMSHfield(message, 10, generator.next())
    if stampTimestamp:
        setMSHfield(message, 7, hl7Timestamp(now))
    for path, value in overrides:
        applyOverride(message, path, value, rootRelative)
    return message


def classifyAck(response):
    '''
    Classify an ACK by the Acknowledgment Code (MSA-1)
    '''
    try:
        msa = response.segment('MSA')
    except KeyError:
        return AckOutcome.MALFORMED
    code = str(msa[1]).strip() if len(msa) > 1 else ''
    if code == 'AA':
        return AckOutcome.ACCEPTED
    if code == 'AR':
        return AckOutcome.REJECTED
    return AckOutcome.ERROR


def printableHL7(message):
    '''
    The message with newlines instead of segment terminators
    '''
    return str(message).replace(CR, '\n')


def stripMLLP(text):
    '''
    Remove any MLLP framing and surrounding white space
    '''
    if text[0:1] == SB:
        text = text[1:]
    end = text.rfind(EB)
    if end >= 0:
        text = text[:end]
    return text.strip()


def parseHL7(text, what, exitCode):
    '''
    Parse an HL7 v2.x vertical bar message
    '''
    text = stripMLLP(text)
    MSH = text.split(CR)[0]
    if MSH[0:3] != 'MSH':
        raise HL7SendError(f'{what} is not an HL7 message - first segment not MSH', exitCode)
    if len(MSH) < 8:        # MSH, the field separator and the four encoding characters
        raise HL7SendError(f'{what} is not a valid HL7 message - first segment too short', exitCode)
    try:
        return hl7.parse(text)
    except (hl7.ParseException, IndexError, ValueError) as e:
        raise HL7SendError(f'{what} is not a valid HL7 message - {e}', exitCode) from e


def getDocument(fileName, encoding='utf-8'):
    '''
    Get an HL7 vertical bar message from a file or standard input
    '''
    thisHL7message = ''
    if fileName == '-':     # Use standard input
        lines = sys.stdin
    elif not os.path.isfile(fileName):
        raise HL7SendError(f'File {fileName} does not exist', EX_NOINPUT)
    else:
        try:
            with open(fileName, 'rt', encoding=encoding, newline='') as fpin:
                lines = lineEnding.split(fpin.read())
        except UnicodeDecodeError as e:
            raise HL7SendError(f'File {fileName} is not {encoding} encoded - {e}', EX_DATAERR) from e
    for line in lines:
        line = line.rstrip('\r\n')
        if line.strip() == '':
            continue
        thisHL7message += line + CR
    return thisHL7message


def mllpSendAndReceive(hostname, port, timeout=None, encoding='utf-8'):
    '''
    A transport that sends a message to hostname:port and returns the parsed response.
    One connection is made for each message.
    '''

    def sendAndReceive(message):
        logging.debug('Connecting to %s:%d', hostname, port)
        with MLLPClient(hostname, port, encoding=encoding) as client:
            if timeout is not None:
                client.socket.settimeout(timeout)
            reply = client.send_message(message)
        if isinstance(reply, bytes):
            reply = reply.decode(encoding, errors='replace')
        return parseHL7(reply, 'Response', EX_PROTOCOL)

    return sendAndReceive


def sendFiles(fileNames, sendAndReceive, generator, overrides=(), generateId=True, stampTimestamp=True, rootRelative=True,
              showMessage=False, showResponse=False, continueOnAckError=False, noSend=False, encoding='utf-8', out=None, err=None):
    '''
    Prepare, send and check the ACK for the message in each file, in order.
    Returns the exit status for the batch; raises HL7SendError for anything that stops the batch.
    '''
    if out is None:
        out = sys.stdout
    if err is None:
        err = sys.stderr
    sent = 0
    failed = []
    for fileName in fileNames:
        hl7message = parseHL7(getDocument(fileName, encoding), f'File {fileName}', EX_DATAERR)
        try:
            prepareMessage(hl7message, generator, generateId, stampTimestamp, overrides, rootRelative)
        except (FieldPathError, FieldNotFound) as e:
            raise HL7SendError(f'Cannot apply field specification to {fileName} - {e}', EX_DATAERR) from e
        messageCode = firstValue(hl7message, 'MSH-9-1')
        controlId = firstValue(hl7message, 'MSH-10')

        if showMessage or noSend:
            print(f'Sending:\n{printableHL7(hl7message)}', file=out)
        if noSend:
            logging.info('Not sending %s %s from %s', messageCode, controlId, fileName)
            continue

        try:
            response = sendAndReceive(hl7message)
        except OSError as e:
            raise HL7SendError(f'Cannot send {messageCode} {controlId} from {fileName} - {e}', EX_UNAVAILABLE) from e
        sent += 1

        outcome = classifyAck(response)
        print(f'Sent {messageCode} {controlId} {outcome.value}', file=out)
        if showResponse:
            print(f'Got response:\n{printableHL7(response)}', file=out)
        if outcome == AckOutcome.MALFORMED:
            raise HL7SendError('Response is not a valid ack', EX_PROTOCOL)
        if outcome != AckOutcome.ACCEPTED:
            print(f'{messageCode} {controlId} got {outcome.value} in ACK response', file=err)
            if not continueOnAckError:
                raise HL7SendError('Message not accepted by receiver', EX_PROTOCOL)
            logging.warning('%s %s from %s not accepted (%s) - continuing', messageCode, controlId, fileName, outcome.value)
            failed.append((fileName, outcome))

    if noSend:
        logging.warning('No messages sent (--no-send)')
        return EX_TEMPFAIL
    logging.info('Sent %d message(s), %d not accepted', sent, len(failed))
    if failed:
        return EX_WARN
    return EX_OK


def firstValue(message, path):
    '''
    The first value at path, or '' if there isn't one
    '''
    try:
        values = readField(message, path)
    except FieldNotFound:
        return ''
    return values[0] if values else ''


def splitArguments(arguments):
    '''
    Split the positional arguments into field specifications and filenames.
    Field specifications must come before the filenames.
    '''
    overrides = []
    fileNames = []
    for arg in arguments:
        if (match := overrideSpec.match(arg)) is not None:
            if fileNames:
                raise HL7SendError(f'Field specification, {arg}, must be before filenames', EX_USAGE)
            overrides.append((match.group(1), match.group(2)))
        else:
            fileNames.append(arg)
    if not fileNames:
        raise HL7SendError('Must specify at least one filename', EX_USAGE)
    return overrides, fileNames


def setupLogging(progName, loggingLevel, logDir, logFile):
    '''
    Set up logging
    '''
    logging_levels = {0:logging.CRITICAL, 1:logging.ERROR, 2:logging.WARNING, 3:logging.INFO, 4:logging.DEBUG}
    logfmt = progName + ' [%(asctime)s]: %(message)s'
    kwargs = {'format': logfmt, 'datefmt': '%d/%m/%y %H:%M:%S %p'}
    if loggingLevel is not None:    # Change the logging level from "WARN" if the -v vebose option is specified
        kwargs['level'] = logging_levels[loggingLevel]
    if logFile is not None:        # and send it to a file if the -l logfile option is specified
        with open(os.path.join(logDir, logFile), 'wt', encoding='utf-8', newline=''):
            pass
        kwargs['filename'] = os.path.join(logDir, logFile)
    logging.basicConfig(**kwargs)
    logging.debug('Logging set up')


def main(argv=None):
    '''
    The main code
    Start by parsing the command line arguements and setting up logging.
    Then send each file named in the command line and check the ACK
    '''

    # Set the command line options
    progName = os.path.basename(sys.argv[0])
    if progName.endswith('.py'):
        progName = progName[0:-3]        # Strip off the .py ending
    parser = argparse.ArgumentParser(description='hl7Send - send HL7 v2.x messages using MLLP')
    parser.add_argument('-H', '--hostname', dest='hostname', default='localhost',
                        help='The destination host (default="localhost")')
    parser.add_argument('-p', '--port', dest='port', required=True,
                        help='The destination port')
    parser.add_argument('-i', '--no-id', dest='noId', action='store_true',
                        help='Do not auto-generate the Message Control Id (MSH-10)')
    parser.add_argument('-t', '--no-timestamp', dest='noTimestamp', action='store_true',
                        help='Do not update the timestamp (MSH-7)')
    parser.add_argument('-m', '--show-message', dest='showMessage', action='store_true',
                        help='Show the text of the message that is sent')
    parser.add_argument('-r', '--show-response', dest='showResponse', action='store_true',
                        help='Show the ACK message')
    parser.add_argument('-c', '--continue-on-ack-error', dest='continueOnAckError', action='store_true',
                        help='Continue sending messages even if the ACK response is a failure or rejection')
    parser.add_argument('-n', '--no-send', dest='noSend', action='store_true',
                        help='Show the messages, but do not send them')
    parser.add_argument('--no-root', dest='noRoot', action='store_true',
                        help='Do not prepend the root prefix to HL7 field value specifications')
    parser.add_argument('-T', '--timeout', dest='timeout', type=float, metavar='timeout',
                        help='The number of seconds to wait for an ACK')
    parser.add_argument('-E', '--encoding', dest='encoding', default='utf-8', metavar='encoding',
                        help='The character encoding of the message files and on the wire (default="utf-8")')
    parser.add_argument ('-v', '--verbose', dest='verbose', type=int, choices=range(0,5),
                         help='The level of logging\n\t0=CRITICAL,1=ERROR,2=WARNING,3=INFO,4=DEBUG')
    parser.add_argument ('-L', '--logDir', dest='logDir', default='.', metavar='logDir',
                         help='The name of the directory where the logging file will be created')
    parser.add_argument ('-l', '--logFile', dest='logFile', metavar='logfile', help='The name of a logging file')
    parser.add_argument('args', nargs='*', metavar='field=value|file',
                        help='Field specifications (before the filenames) and the files containing the messages')

    # Parse the command line
    args = parser.parse_args(argv)
    setupLogging(progName, args.verbose, args.logDir, args.logFile)

    try:
        overrides, fileNames = splitArguments(args.args)
        if not args.port.isdigit():
            raise HL7SendError('Port must be a number', EX_USAGE)
    except HL7SendError as e:
        print(e, file=sys.stderr)
        parser.print_usage(sys.stderr)
        logging.shutdown()
        return e.exitCode
    port = int(args.port)

    if args.noSend:
        sendAndReceive = None
    else:
        sendAndReceive = mllpSendAndReceive(args.hostname, port, args.timeout, args.encoding)
    try:
        status = sendFiles(fileNames, sendAndReceive, ControlIdGenerator(),
                           overrides=overrides,
                           generateId=not args.noId,
                           stampTimestamp=not args.noTimestamp,
                           rootRelative=not args.noRoot,
                           showMessage=args.showMessage,
                           showResponse=args.showResponse,
                           continueOnAckError=args.continueOnAckError,
                           noSend=args.noSend,
                           encoding=args.encoding)
    except HL7SendError as e:
        logging.critical('%s', e)
        logging.shutdown()
        return e.exitCode
    logging.shutdown()
    return status


if __name__ == '__main__':
    sys.exit(main())
