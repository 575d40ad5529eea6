"""
Participant ledger: placing, updating and withdrawing orders in a cycle.

Each submission is a single store transaction. Due deadlines are applied
first, then the participant entry is merged, and threshold evaluation runs
as the last step before the write.
"""
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from django.db import IntegrityError, transaction

from apps.core.services.base import (
    BaseService, ServiceException, ServiceResult, ConflictError,
    NotFoundError, PersistenceError, ValidationError, INTERNAL
)
from apps.cycles.models import BuyingGroup, OrderCycle, Participant, ParticipantItem
from apps.cycles.services import thresholds
from apps.cycles.services.state_machine import CycleStateMachine
from apps.cycles.services.store import CycleMutation, CycleStore
from apps.notifications.events import OrderPlaced, OrderWithdrawn


class ParticipantLedger(BaseService):
    """
    Service for managing participant orders within order cycles.
    """

    def __init__(self, store: Optional[CycleStore] = None,
                 state_machine: Optional[CycleStateMachine] = None):
        super().__init__()
        self.store = store or CycleStore()
        self.state_machine = state_machine or CycleStateMachine(store=self.store)

    def validate_items(self, items) -> List[Dict[str, Any]]:
        """
        Validate and normalise a submitted item list.

        Raises:
            ValidationError: on an empty list or any malformed item
        """
        if not items or not isinstance(items, (list, tuple)):
            raise ValidationError("At least one item is required")

        normalised = []
        seen = set()

        for index, item in enumerate(items):
            if not isinstance(item, dict):
                raise ValidationError(f"Item {index} is malformed")

            product_id = str(item.get('product_id') or '').strip()
            if not product_id:
                raise ValidationError(f"Item {index} is missing product_id")
            if product_id in seen:
                raise ValidationError(f"Duplicate product {product_id}")
            seen.add(product_id)

            quantity = item.get('quantity')
            if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
                raise ValidationError(
                    f"Quantity for {product_id} must be a whole number of at least 1"
                )

            unit_price = self._to_price(item.get('unit_price'), product_id)
            if unit_price is None:
                raise ValidationError(f"Unit price for {product_id} is required")

            retail_unit_price = self._to_price(item.get('retail_unit_price'), product_id)

            min_quantity = item.get('min_quantity', 1)
            if min_quantity is None:
                min_quantity = 1
            if isinstance(min_quantity, bool) or not isinstance(min_quantity, int) or min_quantity < 1:
                raise ValidationError(
                    f"Minimum quantity for {product_id} must be at least 1"
                )

            normalised.append({
                'product_id': product_id,
                'name': str(item.get('name') or product_id),
                'quantity': quantity,
                'unit_price': unit_price,
                'retail_unit_price': (
                    retail_unit_price if retail_unit_price is not None else unit_price
                ),
                'min_quantity': min_quantity,
            })

        return normalised

    def _to_price(self, value, product_id) -> Optional[Decimal]:
        if value is None or value == '':
            return None
        try:
            price = Decimal(str(value))
        except (InvalidOperation, ValueError):
            raise ValidationError(f"Invalid price for {product_id}")
        if not price.is_finite() or price < 0:
            raise ValidationError(f"Invalid price for {product_id}")
        return price.quantize(Decimal('0.01'))

    def place_order(self, group_id: int, user, items, now=None) -> ServiceResult:
        """
        Submit an order to a group's current cycle, opening one if needed.

        Args:
            group_id: BuyingGroup ID
            user: Ordering user
            items: List of item dicts
            now: Clock override

        Returns:
            ServiceResult containing cycle_id, participant_id, total_amount, phase
        """
        try:
            validated = self.validate_items(items)
            cycle_id = self._resolve_open_cycle(group_id, now)
            return self._submit(cycle_id, user, validated, now)

        except ServiceException as e:
            return self._failure('place order', e, group_id=group_id, user_id=user.id)
        except Exception as e:
            self.log_error(
                "Error placing order",
                exception=e,
                group_id=group_id,
                user_id=user.id
            )
            return ServiceResult.fail("Failed to place order", error_code=INTERNAL)

    def join(self, cycle_id: int, user, items, now=None) -> ServiceResult:
        """
        Add or update a user's order in a specific cycle.

        Returns:
            ServiceResult containing cycle_id, participant_id, total_amount, phase
        """
        try:
            validated = self.validate_items(items)
            return self._submit(cycle_id, user, validated, now)

        except ServiceException as e:
            return self._failure('join cycle', e, cycle_id=cycle_id, user_id=user.id)
        except Exception as e:
            self.log_error(
                "Error joining cycle",
                exception=e,
                cycle_id=cycle_id,
                user_id=user.id
            )
            return ServiceResult.fail("Failed to join cycle", error_code=INTERNAL)

    def withdraw(self, cycle_id: int, user, now=None) -> ServiceResult:
        """
        Withdraw a user's order while the cycle is still collecting.

        Returns:
            ServiceResult containing the cycle's new totals
        """
        def apply(mutation: CycleMutation):
            self.state_machine.apply_due_deadlines(mutation)
            cycle = mutation.cycle

            if cycle.phase != OrderCycle.PHASE_COLLECTING:
                # Returned rather than raised so a deadline transition still commits
                return ConflictError("Orders can only be withdrawn while collecting")

            participant = cycle.participants.select_for_update().filter(
                user=user
            ).exclude(order_status=Participant.ORDER_CANCELLED).first()
            if participant is None:
                raise NotFoundError("You have no active order in this cycle")

            participant.order_status = Participant.ORDER_CANCELLED
            participant.cancellation_reason = Participant.REASON_WITHDRAWN
            participant.save(update_fields=[
                'order_status', 'cancellation_reason', 'updated_at'])

            self.state_machine.recompute(mutation)
            mutation.emit(OrderWithdrawn(cycle.id, [user.id]))

            return {
                'cycle_id': cycle.id,
                'participant_id': participant.id,
                'total_amount': cycle.total_amount,
                'total_participants': cycle.total_participants,
                'min_quantity_met': cycle.min_quantity_met,
            }

        try:
            outcome = self.store.transact(cycle_id, apply, now=now)
            if isinstance(outcome, ServiceException):
                return outcome.to_result()

            self.log_info(
                f"User {user.id} withdrew from cycle {cycle_id}",
                cycle_id=cycle_id,
                user_id=user.id
            )
            return ServiceResult.ok(outcome)

        except ServiceException as e:
            return self._failure('withdraw', e, cycle_id=cycle_id, user_id=user.id)
        except Exception as e:
            self.log_error(
                "Error withdrawing order",
                exception=e,
                cycle_id=cycle_id,
                user_id=user.id
            )
            return ServiceResult.fail("Failed to withdraw order", error_code=INTERNAL)

    def _failure(self, action: str, exc: ServiceException, **context) -> ServiceResult:
        if exc.code == INTERNAL:
            self.log_error(f"Failed to {action}", exception=exc, **context)
        else:
            self.log_warning(f"Rejected {action}: {exc.message}", code=exc.code, **context)
        return exc.to_result()

    def _resolve_open_cycle(self, group_id: int, now=None) -> int:
        """
        Return the id of the group's open cycle, creating one under a
        group row lock when none exists.
        """
        existing = self.store.find_open_cycle(group_id)
        if existing is not None:
            self.store.transact(
                existing.id, self.state_machine.apply_due_deadlines, now=now)

        for attempt in range(2):
            try:
                with transaction.atomic():
                    try:
                        group = BuyingGroup.objects.select_for_update().get(pk=group_id)
                    except BuyingGroup.DoesNotExist:
                        raise NotFoundError(f"Buying group {group_id} not found")

                    if not group.is_active:
                        raise ConflictError("This buying group is not accepting orders")

                    cycle = self.store.find_open_cycle(group.id)
                    if cycle is None:
                        cycle = self.store.create_cycle(group, now=now)
                    return cycle.id

            except IntegrityError as e:
                # Another request opened the cycle first
                if attempt:
                    self.log_error(
                        "Could not open a cycle for group",
                        exception=e,
                        group_id=group_id
                    )
                    raise PersistenceError("Could not open an order cycle, please retry")

    def _submit(self, cycle_id: int, user, items: List[Dict[str, Any]], now=None) -> ServiceResult:
        outcome = self.store.transact(
            cycle_id,
            lambda mutation: self._merge(mutation, user, items),
            now=now
        )
        if isinstance(outcome, ServiceException):
            return outcome.to_result()

        self.log_info(
            f"User {user.id} placed order in cycle {cycle_id}",
            cycle_id=cycle_id,
            user_id=user.id,
            total_amount=str(outcome['total_amount'])
        )
        return ServiceResult.ok(outcome)

    def _merge(self, mutation: CycleMutation, user, items: List[Dict[str, Any]]):
        self.state_machine.apply_due_deadlines(mutation)
        cycle = mutation.cycle

        if not cycle.is_open:
            return ConflictError(f"This cycle is no longer accepting orders ({cycle.phase})")

        participant = cycle.participants.select_for_update().filter(user=user).first()

        if participant is not None and participant.payment_status == Participant.PAYMENT_PAID \
                and participant.is_active:
            return ConflictError("Your order is already paid and cannot be changed")

        if cycle.phase == OrderCycle.PHASE_PAYMENT_WINDOW:
            rejection = self._check_mid_cycle_join(cycle, participant, items)
            if rejection is not None:
                return rejection

        total = thresholds.order_total(items)

        if participant is None:
            participant = Participant.objects.create(
                cycle=cycle,
                user=user,
                user_name=user.display_name,
                total_amount=total,
                joined_at=mutation.now,
            )
        else:
            if not participant.is_active:
                participant.order_status = Participant.ORDER_PLACED
                participant.cancellation_reason = ''
                participant.payment_status = Participant.PAYMENT_PENDING
                participant.paid_at = None
                participant.reminder_sent_at = None
                participant.joined_at = mutation.now
            participant.user_name = user.display_name
            participant.total_amount = total
            participant.save()
            participant.items.all().delete()

        ParticipantItem.objects.bulk_create([
            ParticipantItem(participant=participant, **item) for item in items
        ])

        self.state_machine.recompute(mutation)
        mutation.emit(OrderPlaced(
            cycle.id,
            [user.id],
            total_amount=str(total),
            item_count=str(len(items))
        ))

        return {
            'cycle_id': cycle.id,
            'participant_id': participant.id,
            'total_amount': total,
            'phase': cycle.phase,
            'min_quantity_met': cycle.min_quantity_met,
        }

    def _check_mid_cycle_join(self, cycle: OrderCycle, participant: Optional[Participant],
                              items: List[Dict[str, Any]]) -> Optional[ConflictError]:
        """
        Payment-window submissions may only target products that were open
        when the window opened, and may not undo an already met minimum.
        """
        if not cycle.allow_mid_cycle_joins:
            return ConflictError("Ordering has closed for this cycle")

        open_products = set(cycle.open_product_ids or [])
        closed = sorted(item['product_id'] for item in items
                        if item['product_id'] not in open_products)
        if closed:
            return ConflictError(
                f"Products not open in this cycle: {', '.join(closed)}"
            )

        # Aggregates as they would be after replacing this participant's items
        others = [
            [item.as_dict() for item in other.items.all()]
            for other in self.state_machine.active_participants(cycle)
            if participant is None or other.pk != participant.pk
        ]
        projected = thresholds.aggregate_items(others + [items])

        for product_id in thresholds.met_products(cycle.product_aggregates):
            entry = projected.get(product_id)
            if entry is None or entry['quantity'] < entry['min_quantity']:
                return ConflictError(
                    f"This change would drop {product_id} below its minimum"
                )

        return None
