"""
Course Cycle Controller
=======================
Perpetual rotation through an ordered course playlist:
- courseCycle picks the first course the contact has not bought
- courseEmail sends the nurture or pitch emails for that course
- purchaseCheck branches on whether the course was bought
- cycleLoop moves to the next course, looping back when configured

Timing is either fixed (day spacing between emails) or engagement based,
where each gap becomes a race between a deadline and a minimum number of
opens/clicks. Engagement waits are re-checked on every sweep.
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sendflow import db
from sendflow.exceptions import ConfigError, ExecutionError, NotFoundError
from sendflow.models.course_cycles import (
    Course, CourseCycleConfig, CourseCycleEmail, TIMING_DEFAULTS
)
from sendflow.services.automation.transitions import ADVANCE, StepContext, Transition
from sendflow.services.contact_store import get_contact_store
from sendflow.services.content_generator import get_content_generator

logger = logging.getLogger(__name__)

EMAIL_PHASES = ('nurture', 'pitch')
TIMING_MODES = ('fixed', 'engagement')
DEFAULT_TAG_PREFIX = 'purchased_course_'


class CourseCycleController:
    def __init__(self, contacts=None, generator=None):
        self.contacts = contacts or get_contact_store()
        self._generator = generator

    @property
    def generator(self):
        if self._generator is None:
            self._generator = get_content_generator()
        return self._generator

    # ==================== CONFIG CRUD ====================

    @staticmethod
    def _validate_timings(timings: List[Dict]) -> List[Dict]:
        if not timings:
            raise ConfigError("A course cycle needs at least one course timing")
        cleaned = []
        for timing in timings:
            if not timing.get('courseId'):
                raise ConfigError("Every course timing needs a courseId")
            merged = dict(TIMING_DEFAULTS, **timing)
            if merged['timingMode'] not in TIMING_MODES:
                raise ConfigError(f"Unknown timing mode: {merged['timingMode']}")
            for key in ('nurtureEmailCount', 'pitchEmailCount', 'nurtureDelayDays', 'pitchDelayDays',
                        'purchaseCheckDelayDays', 'engagementWaitDays', 'minEngagementActions'):
                if float(merged[key]) < 0:
                    raise ConfigError(f"{key} cannot be negative")
            cleaned.append(merged)
        return cleaned

    def save_config(self, data: Dict, config_id: str = None) -> CourseCycleConfig:
        timings = self._validate_timings(data.get('courseTimings') or data.get('course_timings') or [])

        config = db.session.get(CourseCycleConfig, config_id) if config_id else None
        if config_id and config is None:
            raise NotFoundError(f"Course cycle config {config_id} not found")
        if config is None:
            config = CourseCycleConfig(name=data.get('name') or 'Course cycle')
            db.session.add(config)

        if 'name' in data:
            config.name = data['name']
        config.description = data.get('description', config.description)
        config.timings = timings
        if 'loopOnCompletion' in data or config.loop_on_completion is None:
            config.loop_on_completion = bool(data.get('loopOnCompletion', True))
        if 'differentContentOnSecondCycle' in data or config.different_content_on_second_cycle is None:
            config.different_content_on_second_cycle = bool(data.get('differentContentOnSecondCycle', False))
        if 'isActive' in data or config.is_active is None:
            config.is_active = bool(data.get('isActive', True))

        db.session.commit()
        logger.info(f"Saved course cycle config {config.name} with {len(timings)} courses")
        return config

    def get_config(self, config_id: str) -> CourseCycleConfig:
        config = db.session.get(CourseCycleConfig, config_id)
        if not config:
            raise NotFoundError(f"Course cycle config {config_id} not found")
        return config

    def list_configs(self) -> List[CourseCycleConfig]:
        return CourseCycleConfig.query.order_by(CourseCycleConfig.created_at.desc()).all()

    def delete_config(self, config_id: str):
        config = self.get_config(config_id)
        CourseCycleEmail.query.filter_by(config_id=config_id).delete()
        db.session.delete(config)
        db.session.commit()

    def save_email(self, config_id: str, data: Dict) -> CourseCycleEmail:
        """Create or replace one nurture/pitch email"""
        self.get_config(config_id)
        if not data.get('courseId'):
            raise ConfigError("Course email needs a courseId")
        email_type = data.get('emailType') or 'nurture'
        if email_type not in EMAIL_PHASES:
            raise ConfigError(f"Unknown email type: {email_type}")

        email = self._find_email(config_id, data['courseId'], email_type,
                                 int(data.get('emailIndex', 0)), int(data.get('cycleNumber', 1)))
        if email is None:
            email = CourseCycleEmail(
                config_id=config_id,
                course_id=data['courseId'],
                email_type=email_type,
                email_index=int(data.get('emailIndex', 0)),
                cycle_number=int(data.get('cycleNumber', 1)),
            )
            db.session.add(email)
        email.subject = data.get('subject')
        email.html_content = data.get('htmlContent') or data.get('html_content')
        email.generated = False
        db.session.commit()
        return email

    @staticmethod
    def _find_email(config_id, course_id, email_type, email_index, cycle_number) -> Optional[CourseCycleEmail]:
        return CourseCycleEmail.query.filter_by(
            config_id=config_id,
            course_id=course_id,
            email_type=email_type,
            email_index=email_index,
            cycle_number=cycle_number,
        ).first()

    # ==================== STATE HELPERS ====================

    def _state(self, ctx: StepContext) -> Dict:
        state = ctx.data.get('course_cycle')
        if not state or not state.get('config_id'):
            raise ExecutionError("No course cycle state on execution; a courseCycle node must run first")
        return state

    def _load_config(self, config_id: str) -> CourseCycleConfig:
        config = db.session.get(CourseCycleConfig, config_id)
        if not config:
            raise ExecutionError(f"Course cycle config {config_id} not found")
        if not config.timings:
            raise ExecutionError(f"Course cycle config {config.name} has no courses")
        return config

    def _timing(self, config: CourseCycleConfig, state: Dict) -> Dict:
        timings = config.timings
        index = state.get('course_index', 0)
        if index >= len(timings):
            raise ExecutionError(f"Course index {index} out of range for {config.name}")
        return timings[index]

    def _purchased(self, ctx: StepContext, config: CourseCycleConfig, state: Dict) -> set:
        purchased = set(state.get('purchased_course_ids') or [])
        purchased.update(self.contacts.purchased_course_ids(ctx.contact_id, config.course_ids))
        return purchased

    @staticmethod
    def _first_unpurchased(course_ids: List[str], purchased: set, start: int) -> Optional[int]:
        for index in range(start, len(course_ids)):
            if course_ids[index] not in purchased:
                return index
        return None

    @staticmethod
    def _start_course(state: Dict, index: int):
        state['course_index'] = index
        state['phase'] = 'nurture'
        state['email_index'] = 0
        state['repitch_count'] = 0

    # ==================== NODE HANDLERS ====================

    def handle_course_cycle(self, ctx: StepContext) -> Transition:
        config_id = ctx.node.data.get('courseCycleConfigId')
        if not config_id:
            raise ExecutionError("No course cycle config ID configured")
        config = self._load_config(config_id)
        course_ids = config.course_ids

        state = ctx.data.get('course_cycle') or {}
        if state.get('config_id') != config_id:
            state = {'config_id': config_id, 'course_index': 0, 'cycle_count': 0}

        purchased = self._purchased(ctx, config, state)
        index = self._first_unpurchased(course_ids, purchased, state.get('course_index', 0))
        if index is None:
            index = self._first_unpurchased(course_ids, purchased, 0)
            if index is not None and state.get('course_index', 0) > 0:
                state['cycle_count'] = state.get('cycle_count', 0) + 1
        if index is None:
            logger.info(f"All courses purchased, completing cycle for {ctx.contact_email}")
            ctx.data['course_cycle'] = dict(state, purchased_course_ids=sorted(purchased))
            return Transition.complete('All courses purchased')

        self._start_course(state, index)
        state['purchased_course_ids'] = sorted(purchased)
        ctx.data['course_cycle'] = state
        logger.info(f"Cycle state: course {index + 1}/{len(course_ids)}, "
                    f"cycle #{state.get('cycle_count', 0) + 1} for {ctx.contact_email}")
        return Transition.follow(ctx.graph, ctx.node)

    def handle_course_email(self, ctx: StepContext) -> Transition:
        state = self._state(ctx)
        config = self._load_config(state['config_id'])
        timing = self._timing(config, state)

        phase = ctx.node.data.get('emailPhase') or 'nurture'
        if phase not in EMAIL_PHASES:
            raise ExecutionError(f"Unknown email phase: {phase}")
        if state.get('phase') != phase:
            state['phase'] = phase
            state['email_index'] = 0

        count = int(timing.get(f'{phase}EmailCount') or 0)
        spacing = timedelta(days=float(timing.get(f'{phase}DelayDays') or 0))
        engagement = timing.get('timingMode') == 'engagement'

        wait = ctx.data.get('wait')
        if wait and wait.get('node_id') == ctx.node.id:
            if not self._wait_satisfied(ctx, wait):
                return Transition.stay()
            ctx.data.pop('wait', None)

        email_index = state.get('email_index', 0)
        if email_index >= count:
            return Transition.follow(ctx.graph, ctx.node)

        self._send_course_email(ctx, config, state, timing['courseId'], phase, email_index)
        state['email_index'] = email_index + 1
        ctx.data['course_cycle'] = state

        if engagement:
            ctx.data['wait'] = {
                'node_id': ctx.node.id,
                'since': ctx.now.isoformat(),
                'deadline': (ctx.now + timedelta(days=float(timing.get('engagementWaitDays') or 0))).isoformat(),
                'min_actions': int(timing.get('minEngagementActions') or 0),
            }
            return Transition.stay()

        if state['email_index'] < count:
            return Transition.stay(delay=spacing)
        return Transition.follow(ctx.graph, ctx.node, delay=spacing)

    def _wait_satisfied(self, ctx: StepContext, wait: Dict) -> bool:
        deadline = datetime.fromisoformat(wait['deadline'])
        if ctx.now >= deadline:
            logger.info(f"Engagement wait expired for {ctx.contact_email}")
            return True
        since = datetime.fromisoformat(wait['since'])
        actions = self.contacts.count_engagement(ctx.contact_id, since)
        if actions >= int(wait.get('min_actions') or 0):
            logger.info(f"Engagement threshold met for {ctx.contact_email}: {actions} actions")
            return True
        return False

    def _send_course_email(self, ctx, config, state, course_id, phase, email_index):
        content_set = 2 if config.different_content_on_second_cycle and state.get('cycle_count', 0) >= 1 else 1
        state['content_set'] = content_set

        email = self._find_email(config.id, course_id, phase, email_index, content_set)
        if email is None or not email.html_content:
            email = self._generate_email(config, course_id, phase, email_index, content_set, email)
        if email is None:
            logger.warning(f"No {phase} email #{email_index + 1} for course {course_id}; skipping send")
            return

        ctx.send_email(email.subject, email.html_content, course_email_id=email.id)

    def _generate_email(self, config, course_id, phase, email_index, content_set, existing):
        course = db.session.get(Course, course_id)
        course_info = course.to_dict() if course else {'id': course_id}
        generated = self.generator.generate(course_info, phase, email_index, content_set)
        if not generated.get('html_content'):
            return None

        email = existing or CourseCycleEmail(
            config_id=config.id,
            course_id=course_id,
            email_type=phase,
            email_index=email_index,
            cycle_number=content_set,
        )
        email.subject = generated.get('subject') or (course.title if course else 'New course')
        email.html_content = generated['html_content']
        email.generated = True
        db.session.add(email)
        db.session.flush()
        logger.info(f"Generated {phase} email #{email_index + 1} for course {course_id}")
        return email

    def purchase_check_delay(self, ctx: StepContext) -> timedelta:
        """Wait applied when an execution arrives at a purchaseCheck node"""
        state = ctx.data.get('course_cycle')
        if not state or not state.get('config_id'):
            return timedelta(0)
        config = db.session.get(CourseCycleConfig, state['config_id'])
        if not config or state.get('course_index', 0) >= len(config.timings):
            return timedelta(0)
        days = config.timings[state.get('course_index', 0)].get('purchaseCheckDelayDays') or 0
        return timedelta(days=float(days))

    def handle_purchase_check(self, ctx: StepContext) -> Transition:
        state = self._state(ctx)
        config = self._load_config(state['config_id'])
        course_id = self._timing(config, state)['courseId']

        if self.contacts.has_purchased_course(ctx.contact_id, course_id):
            course = db.session.get(Course, course_id)
            prefix = ctx.node.data.get('purchaseTagPrefix') or DEFAULT_TAG_PREFIX
            tag_name = f"{prefix}{course.title if course else course_id}"
            self.contacts.add_tag(ctx.contact_id, tag_name=tag_name)

            purchased = set(state.get('purchased_course_ids') or [])
            purchased.add(course_id)
            state['purchased_course_ids'] = sorted(purchased)
            state['repitch_count'] = 0
            ctx.data['course_cycle'] = state
            logger.info(f"{ctx.contact_email} purchased course {course_id}")
            return Transition.follow(ctx.graph, ctx.node, handle='purchased')

        policy = ctx.node.data.get('notPurchasedAction') or 'advance'
        max_repitches = int(ctx.node.data.get('maxRepitches', 1) or 0)
        repitched = state.get('repitch_count', 0)
        if policy == 'repitch' and repitched < max_repitches \
                and ctx.graph.next_node_id(ctx.node.id, 'repitch', fallback=False):
            state['repitch_count'] = repitched + 1
            state['phase'] = 'pitch'
            state['email_index'] = 0
            ctx.data['course_cycle'] = state
            logger.info(f"Re-pitching course {course_id} to {ctx.contact_email} ({repitched + 1}/{max_repitches})")
            return Transition.follow(ctx.graph, ctx.node, handle='repitch')

        state['repitch_count'] = 0
        ctx.data['course_cycle'] = state
        return Transition.follow(ctx.graph, ctx.node, handle='not_purchased')

    def handle_cycle_loop(self, ctx: StepContext) -> Transition:
        state = self._state(ctx)
        config = self._load_config(state['config_id'])
        course_ids = config.course_ids
        purchased = self._purchased(ctx, config, state)
        state['purchased_course_ids'] = sorted(purchased)

        index = self._first_unpurchased(course_ids, purchased, state.get('course_index', 0) + 1)
        if index is None:
            if all(course_id in purchased for course_id in course_ids):
                ctx.data['course_cycle'] = state
                return Transition.complete('All courses purchased')

            if not config.loop_on_completion:
                ctx.data['course_cycle'] = state
                logger.info(f"Reached end of course cycle for {ctx.contact_email}, looping disabled")
                next_id = ctx.graph.next_node_id(ctx.node.id, 'complete', fallback=False) \
                    or ctx.graph.next_node_id(ctx.node.id, 'stop', fallback=False)
                if next_id:
                    return Transition(ADVANCE, next_node_id=next_id)
                return Transition.complete('Course cycle finished')

            state['cycle_count'] = state.get('cycle_count', 0) + 1
            index = self._first_unpurchased(course_ids, purchased, 0)

        self._start_course(state, index)
        ctx.data['course_cycle'] = state
        logger.info(f"Moving to course {index + 1}/{len(course_ids)}, "
                    f"cycle #{state['cycle_count'] + 1} for {ctx.contact_email}")
        return Transition.follow(ctx.graph, ctx.node, handle='next')


_course_cycle_controller = None


def get_course_cycle_controller() -> CourseCycleController:
    global _course_cycle_controller
    if _course_cycle_controller is None:
        _course_cycle_controller = CourseCycleController()
    return _course_cycle_controller
