#!/usr/bin/env python

'''
Relay UDP datagrams from each client to every configured target at once,
then relay whatever the targets answer back to the client that prompted them.

Handy for mirroring live traffic onto a shadow service, or for running an
old and a new backend side by side during a migration.
'''

from dataclasses import dataclass
from getopt import gnu_getopt
import logging
from os.path import basename, isfile
import selectors, socket
from sys import argv, stderr, stdout
from threading import Lock, Thread
from time import time

import yaml

def _build_logger(label, err = None, out = None):
    obj = logging.getLogger(label)
    obj.setLevel(logging.DEBUG)
    # Err
    err_handler = logging.StreamHandler(err or stderr)
    err_filter = logging.Filter()
    err_filter.filter = lambda record: record.levelno >= logging.WARNING
    err_handler.addFilter(err_filter)
    obj.addHandler(err_handler)
    # Out
    out_handler = logging.StreamHandler(out or stdout)
    out_filter = logging.Filter()
    out_filter.filter = lambda record: record.levelno < logging.WARNING
    out_handler.addFilter(out_filter)
    obj.addHandler(out_handler)
    return obj
_logger = _build_logger('udp_fanout_relay')

def _colour_addr(addr):
    return '%s:%s' % (_colour_text(addr[0], COLOUR_BLUE), _colour_text(addr[1]))

def _colour_text(text, colour = None):
    colour = colour or COLOUR_BOLD
    # A useful shorthand for applying a colour to a string.
    return '%s%s%s' % (colour, text, COLOUR_OFF)

def _enable_colours(force = None):
    global COLOUR_BOLD
    global COLOUR_BLUE
    global COLOUR_RED
    global COLOUR_GREEN
    global COLOUR_YELLOW
    global COLOUR_OFF
    if force == True or (force is None and stdout.isatty()):
        # Colours for standard output.
        COLOUR_BOLD = '\033[1m'
        COLOUR_BLUE = '\033[1;94m'
        COLOUR_RED = '\033[1;91m'
        COLOUR_GREEN = '\033[1;92m'
        COLOUR_YELLOW = '\033[1;93m'
        COLOUR_OFF = '\033[0m'
    else:
        # Set to blank values if not to standard output.
        COLOUR_BOLD = ''
        COLOUR_BLUE = ''
        COLOUR_RED = ''
        COLOUR_GREEN = ''
        COLOUR_YELLOW = ''
        COLOUR_OFF = ''
_enable_colours()

def _log_exception(e, msg = None):
    # Shorthand wrapper to report an exception that we are choosing to survive.
    sub_msg = ''
    if msg:
        sub_msg = ' (%s)' % msg
    _logger.error('Unexpected %s%s: %s' % (_colour_text(type(e).__name__, COLOUR_RED), sub_msg, e))

BUFFER_SIZE = 65535
# Most client datagrams handled per pass of the serve loop.
MAX_DRAIN = 64

DEFAULT_BIND = '0.0.0.0'
DEFAULT_PORT = 4444
DEFAULT_READER_TIMEOUT = 60
DEFAULT_WRITER_TIMEOUT = 0
DEFAULT_SAMPLE_SIZE = 64

# Seconds between idle checks while nothing is arriving.
TICK = 0.5

STATE_ACTIVE = 'ACTIVE'
STATE_TERMINATED = 'TERMINATED'

TITLE_BIND = 'bind'
TITLE_PORT = 'port'
TITLE_REMOTES = 'remotes'
TITLE_READER_TIMEOUT = 'reader-timeout'
TITLE_WRITER_TIMEOUT = 'writer-timeout'
TITLE_PRINT_REQUEST = 'print-request'
TITLE_PRINT_REQUEST_SIZE = 'print-request-size'
TITLE_PRINT_RESPONSE = 'print-response'
TITLE_PRINT_RESPONSE_SIZE = 'print-response-size'

CONFIG_KEYS = (
    TITLE_BIND,
    TITLE_PORT,
    TITLE_REMOTES,
    TITLE_READER_TIMEOUT,
    TITLE_WRITER_TIMEOUT,
    TITLE_PRINT_REQUEST,
    TITLE_PRINT_REQUEST_SIZE,
    TITLE_PRINT_RESPONSE,
    TITLE_PRINT_RESPONSE_SIZE
)

def _is_loop(target_addr, server_addr):
    if target_addr[1] != server_addr[1]:
        # Non-matching port. Barring forwarding shenanigans, not a loop.
        return False

    # Shortcut for loopback stuff.
    if target_addr[0].startswith('127.'):
        return True

    try:
        local_addresses = socket.gethostbyname_ex(socket.gethostname())[2]
    except OSError:
        local_addresses = []
    # Target is a local address and we are bound to a local address.
    return target_addr[0] in local_addresses and server_addr[0] in (DEFAULT_BIND, target_addr[0])

def _load_config(path):
    if not isfile(path):
        _logger.error(f'Configuration file does not exist: {_colour_text(path, COLOUR_GREEN)}')
        return {}, False

    try:
        with open(path) as f:
            content = yaml.safe_load(f)
    except yaml.YAMLError as e:
        _logger.error(f'Configuration file is not readable YAML: {_colour_text(path, COLOUR_GREEN)}: {e}')
        return {}, False
    except OSError as e:
        _logger.error(f'Unable to read configuration file: {_colour_text(path, COLOUR_GREEN)}: {e}')
        return {}, False

    if content is None:
        # Empty file
        return {}, True
    if not isinstance(content, dict):
        _logger.error(f'Configuration file must contain a mapping: {_colour_text(path, COLOUR_GREEN)}')
        return {}, False

    good = True
    for key in content:
        if key not in CONFIG_KEYS:
            _logger.error(f'Unknown configuration key: {_colour_text(key)}')
            good = False
    return content, good

def _split_remotes(value):
    if value is None:
        return []
    if isinstance(value, str):
        return value.split(',')
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if v is not None]
    return [str(value)]

def _parse_args(args_raw):

    good = True

    def check_flag(value_raw, label):
        if isinstance(value_raw, bool):
            return value_raw, True
        _logger.error(f'Invalid {label} value: {value_raw}')
        return None, False

    def check_number(value_raw, label, converter = float):
        try:
            value = converter(value_raw)
            if value >= 0:
                return value, True
        except (TypeError, ValueError):
            pass
        _logger.error(f'Invalid {label}: {value_raw}')
        return None, False

    def check_port(value_raw, label, minimum = 1):
        value, good_arg = check_number(value_raw, label, int)
        if good_arg and minimum <= value <= 65535:
            return value, True
        if good_arg:
            _logger.error(f'Invalid {label}: {value_raw}')
        return None, False

    def check_target(value_raw, server_addr):
        host, _, port_raw = value_raw.rpartition(':')
        if not host or not port_raw:
            _logger.error(f'Invalid target (expected host:port): {_colour_text(value_raw)}')
            return None, False

        port, good_arg = check_port(port_raw, f'target port for {_colour_text(host, COLOUR_BLUE)}')
        if not good_arg:
            return None, False

        try:
            ip = socket.gethostbyname(host)
        except OSError:
            _logger.error(f'Unable to resolve: {_colour_text(host, COLOUR_BLUE)}')
            return None, False

        if _is_loop((ip, port), server_addr):
            _logger.error(f'Bad target (avoiding a potential loop): {_colour_addr((ip, port))}')
            return None, False
        return (ip, port), True

    def hexit(exit_code):
        _logger.error('Usage: %s [-b bind] [-c config] [-h] [-p port] [-r reader-timeout] [-w writer-timeout] [--print-request] [--print-request-size n] [--print-response] [--print-response-size n] [--no-colours] target:port [target:port ...]' % basename(__file__))
        exit(exit_code)

    try:
        args, operands = gnu_getopt(args_raw, 'b:c:hp:r:w:', ['no-colours', 'print-request', 'print-request-size=', 'print-response', 'print-response-size='])
    except Exception as e:
        _logger.error(f'Error parsing arguments: {e}')
        hexit(1)

    raw = {}
    config_path = None
    data = {}

    for arg, value_raw in args:
        if arg == '-h':
            hexit(0)
        elif arg == '-b':
            raw[TITLE_BIND] = value_raw
        elif arg == '-c':
            config_path = value_raw
        elif arg == '-p':
            raw[TITLE_PORT] = value_raw
        elif arg == '-r':
            raw[TITLE_READER_TIMEOUT] = value_raw
        elif arg == '-w':
            raw[TITLE_WRITER_TIMEOUT] = value_raw
        elif arg == '--no-colours':
            data['colours'] = False
        elif arg == '--print-request':
            raw[TITLE_PRINT_REQUEST] = True
        elif arg == '--print-request-size':
            raw[TITLE_PRINT_REQUEST_SIZE] = value_raw
        elif arg == '--print-response':
            raw[TITLE_PRINT_RESPONSE] = True
        elif arg == '--print-response-size':
            raw[TITLE_PRINT_RESPONSE_SIZE] = value_raw

    remotes = []
    if config_path:
        config, good = _load_config(config_path)
        remotes.extend(_split_remotes(config.pop(TITLE_REMOTES, None)))
        for key, value in config.items():
            # Command line beats the file.
            raw.setdefault(key, value)
    remotes.extend(operands)

    data['bind'] = str(raw.get(TITLE_BIND, DEFAULT_BIND))

    for key, label, title, converter, default in [
            ('port', 'listen port', TITLE_PORT, None, DEFAULT_PORT),
            ('reader_timeout', 'reader timeout', TITLE_READER_TIMEOUT, float, DEFAULT_READER_TIMEOUT),
            ('writer_timeout', 'writer timeout', TITLE_WRITER_TIMEOUT, float, DEFAULT_WRITER_TIMEOUT),
            ('print_request_size', 'request sample size', TITLE_PRINT_REQUEST_SIZE, int, DEFAULT_SAMPLE_SIZE),
            ('print_response_size', 'response sample size', TITLE_PRINT_RESPONSE_SIZE, int, DEFAULT_SAMPLE_SIZE)
        ]:
        value_raw = raw.get(title, default)
        if converter is None:
            # Port 0 lets the OS choose.
            data[key], good_arg = check_port(value_raw, label, minimum = 0)
        else:
            data[key], good_arg = check_number(value_raw, label, converter)
        good = good and good_arg

    for key, label, title in [
            ('print_request', 'print request', TITLE_PRINT_REQUEST),
            ('print_response', 'print response', TITLE_PRINT_RESPONSE)
        ]:
        data[key], good_arg = check_flag(raw.get(title, False), label)
        good = good and good_arg

    targets = []
    for value_raw in remotes:
        value_raw = value_raw.strip()
        if not value_raw:
            # Blank entries are ignored.
            continue

        target, good_arg = check_target(value_raw, (data['bind'], data['port']))
        good = good and good_arg
        if not good_arg:
            continue

        if target in targets:
            _logger.warning(f'A target was specified twice: {_colour_addr(target)}')
            continue
        targets.append(target)

    if not targets:
        _logger.error('No relay target specified.')
        good = False
    data['targets'] = tuple(targets)

    if not good:
        hexit(1)

    return data

def _main(args_raw):
    kwargs = _parse_args(args_raw)
    if not kwargs.pop('colours', True):
        _enable_colours(False)
    return run(**kwargs)

def _summarize(options):
    if len(options.targets) == 1:
        _logger.info(f'Relaying UDP datagrams on {_colour_addr((options.bind, options.port))} to {_colour_addr(options.targets[0])}')
    else:
        _logger.info(f'Relaying UDP datagrams on {_colour_addr((options.bind, options.port))} to the following hosts:')
        for target in options.targets:
            _logger.info(f'  * {_colour_addr(target)}')

    for label, timeout in [('reader', options.reader_timeout), ('writer', options.writer_timeout)]:
        if timeout:
            _logger.info(f'Sessions close after {_colour_text(timeout)}s of {label} inactivity.')

    if options.print_request:
        _logger.info(f'Printing up to {_colour_text(options.print_request_size)} bytes of each request.')
    if options.print_response:
        _logger.info(f'Printing up to {_colour_text(options.print_response_size)} bytes of each response.')

def new_socket():
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    s.setblocking(False)
    return s

def run(**kwargs):
    options = ProxyOptions(**kwargs)
    _summarize(options)

    relay = UdpFanoutRelay(options)
    try:
        relay.start()
    except OSError as e:
        _logger.error(f'Bind failed on {_colour_addr((options.bind, options.port))}: {e}')
        relay.shutdown()
        return 1

    try:
        relay.serve()
    finally:
        relay.shutdown()
    return 0

def sample(data, size):
    '''
    Hex of at most `size` leading bytes of `data`. The payload itself is left alone.
    '''
    return bytes(data[:max(0, min(size, len(data)))]).hex()

@dataclass(frozen=True)
class ProxyOptions:
    targets: tuple = ()
    bind: str = DEFAULT_BIND
    port: int = DEFAULT_PORT
    reader_timeout: float = DEFAULT_READER_TIMEOUT
    writer_timeout: float = DEFAULT_WRITER_TIMEOUT
    print_request: bool = False
    print_request_size: int = DEFAULT_SAMPLE_SIZE
    print_response: bool = False
    print_response_size: int = DEFAULT_SAMPLE_SIZE

    @property
    def remotes(self):
        return ', '.join('%s:%s' % target for target in self.targets)

class SessionContext(Thread):
    '''
    Worker shared by every shadow link of a single session.
    Reads replies from all of them and hands each to the link's callback.
    '''
    def __init__(self, session):
        Thread.__init__(self, name='session-%s:%s' % session.addr, daemon=True)
        self.__done = False
        self.__started = False
        self.__selector = selectors.DefaultSelector()
        # Written to by stop() so the worker leaves select() straight away.
        self.__wake_reader, self.__wake_writer = socket.socketpair()
        self.__wake_reader.setblocking(False)
        self.__wake_writer.setblocking(False)
        self.__selector.register(self.__wake_reader, selectors.EVENT_READ, None)

    def register(self, link):
        self.__selector.register(link.socket, selectors.EVENT_READ, link)

    def unregister(self, link):
        try:
            self.__selector.unregister(link.socket)
        except (KeyError, ValueError):
            # Never registered, or the selector is already gone.
            pass

    def start(self):
        self.__started = True
        Thread.start(self)

    def stop(self):
        '''
        Ask the worker to finish. Never waits on it; the worker releases its own selector.
        '''
        if self.__done:
            return
        self.__done = True
        if not self.__started:
            self.__release()
            return
        try:
            self.__wake_writer.send(b'\0')
        except OSError:
            # Already gone, or the wake buffer is full. Either way the worker is on its way out.
            pass

    def __release(self):
        self.__selector.close()
        self.__wake_reader.close()
        self.__wake_writer.close()

    def run(self):
        try:
            while not self.__done:
                try:
                    events = self.__selector.select(TICK)
                except (OSError, ValueError):
                    # Selector closed underneath us.
                    break

                for key, _ in events:
                    if self.__done:
                        break
                    link = key.data
                    if link is None:
                        # Wake-up from stop()
                        continue
                    try:
                        link.receive()
                    except Exception as e:
                        _log_exception(e, f'reply from shadow {link} for {link.session}')
        finally:
            self.__release()

class ShadowLink:
    def __init__(self, session, target, on_receive):
        # Non-owning. The session decides when this link lives and dies.
        self.session = session
        self.target = target
        self.socket = None
        self.context = None
        self.closed = False
        self.__on_receive = on_receive

    def __str__(self):
        return _colour_addr(self.target)

    def open(self, context: SessionContext):
        s = None
        try:
            s = new_socket()
            # Connecting limits replies to this target and surfaces ICMP errors.
            s.connect(self.target)
            self.socket = s
            context.register(self)
            self.context = context
        except (OSError, ValueError) as e:
            _logger.error(f'Unable to open shadow {self} for {self.session}: {e}')
            self.socket = None
            if s is not None:
                s.close()
            self.closed = True
        _logger.info(f'Shadow started, client: {self.session}, shadow: {self}, success: {not self.closed}')
        return not self.closed

    def close(self):
        if self.closed:
            return
        self.closed = True
        if self.context:
            self.context.unregister(self)
        self.socket.close()

    def receive(self):
        while not self.closed:
            try:
                data = self.socket.recv(BUFFER_SIZE)
            except BlockingIOError:
                return
            except ConnectionRefusedError:
                _logger.error(f'Target unreachable: {self}, client: {self.session}')
                return
            except OSError:
                if self.closed:
                    # Socket closed by a teardown while we were reading.
                    return
                raise
            self.__on_receive(self.session, self, data)

    def send(self, data):
        if self.closed:
            return False
        try:
            self.socket.send(data)
            return True
        except ConnectionRefusedError:
            _logger.error(f'Target unreachable: {self}, client: {self.session}')
        except OSError as e:
            _logger.error(f'Error sending to shadow {self} for {self.session}: {e}')
        return False

class ClientSession:
    def __init__(self, addr):
        self.addr = addr
        self.links = ()
        self.context = None
        self.state = STATE_ACTIVE
        self.last_read = self.last_write = time()
        self.__lock = Lock()

    def __str__(self):
        return _colour_addr(self.addr)

    def is_active(self):
        return self.state == STATE_ACTIVE

    def is_idle(self, now, reader_timeout, writer_timeout):
        if reader_timeout and now - self.last_read >= reader_timeout:
            return True
        return bool(writer_timeout and now - self.last_write >= writer_timeout)

    def open(self, targets, on_receive):
        with self.__lock:
            if not self.is_active():
                # Torn down before we got the chance to open.
                return False
            context = SessionContext(self)
            links = []
            for target in targets:
                link = ShadowLink(self, target, on_receive)
                if link.open(context):
                    links.append(link)
            self.context = context
            self.links = tuple(links)
            context.start()
        return True

    def close(self):
        with self.__lock:
            if not self.is_active():
                return False
            self.state = STATE_TERMINATED

            for link in self.links:
                # Best effort. One bad close must not keep the others open.
                try:
                    link.close()
                except Exception as e:
                    _logger.warning(f'Shadow stopped, client: {self}, shadow: {link}, success: False ({e})')
                else:
                    _logger.info(f'Shadow stopped, client: {self}, shadow: {link}, success: True')

            if self.context:
                self.context.stop()
        return True

class SessionRegistry:
    '''
    The one place that knows which clients currently have a session.

    Creation goes through dict.setdefault and removal through dict.pop,
    so racing first packets get a single session and racing teardowns close it once.
    '''
    def __init__(self, options: ProxyOptions, engine):
        self.options = options
        self.engine = engine
        self.__sessions = {}

    def __contains__(self, addr):
        return addr in self.__sessions

    def __len__(self):
        return len(self.__sessions)

    def get(self, addr):
        return self.__sessions.get(addr)

    def sessions(self):
        return list(self.__sessions.values())

    def ensure_session(self, addr):
        session = self.__sessions.get(addr)
        if session is not None:
            return session

        candidate = ClientSession(addr)
        session = self.__sessions.setdefault(addr, candidate)
        if session is candidate:
            _logger.info(f'New session: {session}')
            session.open(self.options.targets, self.engine.relay_response)
        return session

    def teardown(self, addr):
        session = self.__sessions.pop(addr, None)
        if session is None:
            return None
        _logger.info(f'Closing session: {session}')
        session.close()
        return session

    def expired(self, now = None):
        now = time() if now is None else now
        return [s for s in self.sessions() if s.is_idle(now, self.options.reader_timeout, self.options.writer_timeout)]

    def close_all(self):
        for addr in list(self.__sessions.keys()):
            self.teardown(addr)

class RelayEngine:
    def __init__(self, options: ProxyOptions, server_socket = None):
        self.options = options
        # Client-facing socket, set once the listener is bound.
        self.socket = server_socket

    def forward(self, session, data):
        if not session.links:
            _logger.warning(f'No shadow links for client: {session}, remotes: {self.options.remotes}, data: {sample(data, self.options.print_request_size)}')
            return 0

        sent = 0
        for link in session.links:
            success = link.send(data)
            if success:
                sent += 1
            if self.options.print_request:
                _logger.info(f'Request client: {session}, shadow: {link}, data[{len(data)}]: {sample(data, self.options.print_request_size)}, success: {success}')
        return sent

    def relay_response(self, session, link, data):
        success = False
        if session.is_active():
            try:
                self.socket.sendto(data, session.addr)
                success = True
                session.last_write = time()
            except OSError as e:
                _logger.error(f'Error replying to client {session} from shadow {link}: {e}')

        if self.options.print_response:
            _logger.info(f'Response client: {session}, shadow: {link}, data[{len(data)}]: {sample(data, self.options.print_response_size)}, success: {success}')
        return success

class UdpFanoutRelay:
    def __init__(self, options: ProxyOptions):
        self.options = options
        self.engine = RelayEngine(options)
        self.registry = SessionRegistry(options, self.engine)
        self.socket = None
        self.__done = False

    @property
    def address(self):
        return self.socket.getsockname()

    def on_active(self, addr):
        try:
            session = self.registry.ensure_session(addr)
            session.last_read = time()
            return session
        except Exception as e:
            _log_exception(e, f'activity from {_colour_addr(addr)}')

    def on_data(self, addr, data):
        try:
            session = self.registry.ensure_session(addr)
            session.last_read = time()
            return self.engine.forward(session, data)
        except Exception as e:
            _log_exception(e, f'datagram from {_colour_addr(addr)}')

    def on_inactive(self, addr):
        try:
            return self.registry.teardown(addr)
        except Exception as e:
            _log_exception(e, f'closing session for {_colour_addr(addr)}')

    def reap_idle(self, now = None):
        expired = self.registry.expired(now)
        for session in expired:
            _logger.info(f'Session idle: {session}')
            self.on_inactive(session.addr)
        return expired

    def receive(self):
        # Bounded so that a busy client socket still leaves room for reaping.
        for _ in range(MAX_DRAIN):
            try:
                data, addr = self.socket.recvfrom(BUFFER_SIZE)
            except BlockingIOError:
                return
            except OSError as e:
                _log_exception(e, 'reading from clients')
                return
            self.on_data(addr, data)

    def serve(self):
        selector = selectors.DefaultSelector()
        selector.register(self.socket, selectors.EVENT_READ)
        try:
            while not self.__done:
                if selector.select(TICK):
                    self.receive()
                self.reap_idle()
        finally:
            selector.close()

    def shutdown(self):
        self.registry.close_all()
        if self.socket is not None:
            self.socket.close()
            self.socket = None

    def start(self):
        self.socket = new_socket()
        self.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.socket.bind((self.options.bind, self.options.port))
        self.engine.socket = self.socket

    def stop(self):
        self.__done = True

if __name__ == '__main__':
    try:
        exit(_main(argv[1:])) # pragma no cover
    except KeyboardInterrupt:
        print('')
        exit(130)
