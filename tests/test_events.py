#!/usr/bin/env python3
''' test event handler registries '''

from castit.events import HandlerRegistry, StatusReporter


def test_raising_handler_does_not_block_others():
    ''' test that a failing handler is skipped '''
    registry = HandlerRegistry('test')
    seen = []

    def broken(value):
        raise RuntimeError(f'cannot handle {value}')

    registry.add(broken)
    registry.add(seen.append)
    registry.emit(1)
    assert seen == [1]


def test_each_handler_gets_own_copy():
    ''' test that a handler mutating its value does not affect the next handler '''
    registry = HandlerRegistry('test')
    seen = []
    registry.add(lambda names: names.append('intruder'))
    registry.add(seen.append)
    published = ['Kitchen', 'Den']
    registry.emit(published)
    assert seen == [['Kitchen', 'Den']]
    assert published == ['Kitchen', 'Den']


def test_remove_handler():
    ''' test that removed handlers are not called '''
    registry = HandlerRegistry('test')
    seen = []
    handler_id = registry.add(seen.append)
    other_id = registry.add(lambda value: seen.append(value * 10))
    assert handler_id != other_id
    assert len(registry) == 2
    registry.remove(other_id)
    registry.emit(2)
    assert seen == [2]


def test_dispatcher_receives_delivery():
    ''' test that events go through the dispatcher when one is set '''
    registry = HandlerRegistry('test')
    seen = []
    scheduled = []
    registry.add(seen.append)
    registry.dispatcher = lambda fn, value: scheduled.append((fn, value))
    registry.emit('x')
    assert seen == []
    fn, value = scheduled[0]
    fn(value)
    assert seen == ['x']


def test_emit_without_handlers_skips_dispatcher():
    ''' test that nothing is scheduled when there are no handlers '''
    registry = HandlerRegistry('test')
    scheduled = []
    registry.dispatcher = lambda fn, value: scheduled.append(value)
    registry.emit('x')
    assert scheduled == []


def test_status_reporter_channels():
    ''' test that status and error messages go to separate channels '''
    reporter = StatusReporter()
    statuses = []
    errors = []
    reporter.status.add(statuses.append)
    reporter.errors.add(errors.append)
    reporter.report_status('working')
    reporter.report_error('broken')
    assert statuses == ['working']
    assert errors == ['broken']
