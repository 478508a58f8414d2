"""AppleScript sources driven through ``osascript``.

Every user-supplied value reaches a script through ``argv``; nothing is
interpolated into source text. Instants cross the boundary as Unix seconds.
Multi-row results are linefeed-separated with tab-separated columns.
"""

from __future__ import annotations

# Unix epoch as an AppleScript date in the local clock.
_EPOCH_HANDLER = """
on epochDate()
    set d to current date
    set day of d to 1
    set year of d to 1970
    set month of d to January
    set time of d to 0
    return d + (time to GMT)
end epochDate
"""

_CLEAN_TEXT_HANDLER = """
on cleanText(v)
    if v is missing value then return ""
    set s to v as text
    repeat with sep in {tab, return, linefeed}
        set AppleScript's text item delimiters to sep
        set parts to text items of s
        set AppleScript's text item delimiters to " "
        set s to parts as text
    end repeat
    set AppleScript's text item delimiters to ""
    return s
end cleanText
"""

_JOIN_HANDLER = """
on joinRows(rows)
    set AppleScript's text item delimiters to linefeed
    set joined to rows as text
    set AppleScript's text item delimiters to ""
    return joined
end joinRows
"""

# Collect matching instances of one uid and pick the anchor occurrence.
# An anchor of 0 selects the earliest instance.
_MATCH_HANDLER = """
on matchingEvents(uidText)
    set found to {}
    tell application "Calendar"
        repeat with c in calendars
            try
                set found to found & (every event of c whose uid is uidText)
            end try
        end repeat
    end tell
    return found
end matchingEvents

on anchorOf(found, anchorUnix, epoch)
    set anchorEvent to missing value
    set anchorStart to 0
    tell application "Calendar"
        repeat with e in found
            set s to ((start date of e) - epoch) as integer
            if anchorUnix is 0 then
                if anchorEvent is missing value or s < anchorStart then
                    set anchorEvent to contents of e
                    set anchorStart to s
                end if
            else if s is anchorUnix then
                set anchorEvent to contents of e
                set anchorStart to s
            end if
        end repeat
    end tell
    return {anchorEvent, anchorStart}
end anchorOf

on inScope(scopeText, s, anchorStart)
    if scopeText is "series" then return true
    if scopeText is "future" then return s >= anchorStart
    return s is anchorStart
end inScope
"""

PING = """
tell application "Calendar"
    return "ok"
end tell
"""

LIST_CALENDARS = (
    _CLEAN_TEXT_HANDLER
    + _JOIN_HANDLER
    + """
on run argv
    set rows to {}
    tell application "Calendar"
        repeat with c in calendars
            set calID to ""
            try
                set calID to (calendarIdentifier of c as text)
            on error
                set calID to (name of c as text)
            end try
            set rowText to calID & tab & my cleanText(name of c) & tab & (writable of c as text)
            copy rowText to end of rows
        end repeat
    end tell
    return my joinRows(rows)
end run
"""
)

ENUMERATE_EVENTS = (
    _EPOCH_HANDLER
    + _CLEAN_TEXT_HANDLER
    + _JOIN_HANDLER
    + """
on run argv
    set epoch to my epochDate()
    set fromDate to epoch + ((item 1 of argv) as integer)
    set toDate to epoch + ((item 2 of argv) as integer)
    set rows to {}
    tell application "Calendar"
        repeat with c in calendars
            set calID to ""
            try
                set calID to (calendarIdentifier of c as text)
            on error
                set calID to (name of c as text)
            end try
            set calName to my cleanText(name of c)
            repeat with e in (every event of c whose start date >= fromDate and start date <= toDate)
                set evStart to ((start date of e) - epoch) as integer
                set evEnd to ((end date of e) - epoch) as integer
                set evLoc to ""
                set evNotes to ""
                set evURL to ""
                try
                    set evLoc to my cleanText(location of e)
                end try
                try
                    set evNotes to my cleanText(description of e)
                end try
                try
                    set evURL to my cleanText(url of e)
                end try
                set rowText to (uid of e as text) & tab & calID & tab & calName & tab & my cleanText(summary of e) & tab & (evStart as text) & tab & (evEnd as text) & tab & (allday event of e as text) & tab & evLoc & tab & evNotes & tab & evURL
                copy rowText to end of rows
            end repeat
        end repeat
    end tell
    return my joinRows(rows)
end run
"""
)

CREATE_EVENT = (
    _EPOCH_HANDLER
    + """
on run argv
    set calName to item 1 of argv
    set titleText to item 2 of argv
    set epoch to my epochDate()
    set startDate to epoch + ((item 3 of argv) as integer)
    set endDate to epoch + ((item 4 of argv) as integer)
    set locText to item 5 of argv
    set notesText to item 6 of argv
    set urlText to item 7 of argv
    set allDayVal to ((item 8 of argv) is "true")
    set ruleText to item 9 of argv
    tell application "Calendar"
        set targetCal to missing value
        repeat with c in calendars
            if (name of c as text) is calName then set targetCal to c
            if targetCal is missing value then
                try
                    if (calendarIdentifier of c as text) is calName then set targetCal to c
                end try
            end if
            if targetCal is not missing value then exit repeat
        end repeat
        if targetCal is missing value then error "calendar not found"
        set newEvent to make new event at end of events of targetCal with properties {summary:titleText, start date:startDate, end date:endDate, location:locText, description:notesText, url:urlText, allday event:allDayVal}
        if ruleText is not "" then set recurrence of newEvent to ruleText
        return uid of newEvent as text
    end tell
end run
"""
)

# argv: uid, scope, anchor, ",field,list,", title, start, end, location,
# notes, url, allday. Only fields named in the list are applied.
UPDATE_EVENTS = (
    _EPOCH_HANDLER
    + _MATCH_HANDLER
    + """
on run argv
    set uidText to item 1 of argv
    set scopeText to item 2 of argv
    set anchorUnix to (item 3 of argv) as integer
    set fieldList to item 4 of argv
    set titleText to item 5 of argv
    set startText to item 6 of argv
    set endText to item 7 of argv
    set locText to item 8 of argv
    set notesText to item 9 of argv
    set urlText to item 10 of argv
    set allDayText to item 11 of argv
    set epoch to my epochDate()
    set found to my matchingEvents(uidText)
    set {anchorEvent, anchorStart} to my anchorOf(found, anchorUnix, epoch)
    if anchorEvent is missing value then return "0"
    tell application "Calendar"
        set anchorEnd to ((end date of anchorEvent) - epoch) as integer
        set startDelta to 0
        set endDelta to 0
        if fieldList contains ",start," then set startDelta to ((startText as integer) - anchorStart)
        if fieldList contains ",end," then set endDelta to ((endText as integer) - anchorEnd)
        set changed to 0
        repeat with e in found
            set s to ((start date of e) - epoch) as integer
            if my inScope(scopeText, s, anchorStart) then
                if fieldList contains ",title," then set summary of e to titleText
                if fieldList contains ",location," then set location of e to locText
                if fieldList contains ",notes," then set description of e to notesText
                if fieldList contains ",url," then set url of e to urlText
                if fieldList contains ",all_day," then set allday event of e to (allDayText is "true")
                set newStart to (start date of e) + startDelta
                set newEnd to (end date of e) + endDelta
                if startDelta > 0 then
                    set end date of e to newEnd
                    set start date of e to newStart
                else
                    set start date of e to newStart
                    set end date of e to newEnd
                end if
                set changed to changed + 1
            end if
        end repeat
    end tell
    return changed as text
end run
"""
)

DELETE_EVENTS = (
    _EPOCH_HANDLER
    + _MATCH_HANDLER
    + """
on run argv
    set uidText to item 1 of argv
    set scopeText to item 2 of argv
    set anchorUnix to (item 3 of argv) as integer
    set epoch to my epochDate()
    set found to my matchingEvents(uidText)
    set {anchorEvent, anchorStart} to my anchorOf(found, anchorUnix, epoch)
    if anchorEvent is missing value then return "0"
    set doomed to {}
    tell application "Calendar"
        repeat with e in found
            set s to ((start date of e) - epoch) as integer
            if my inScope(scopeText, s, anchorStart) then copy contents of e to end of doomed
        end repeat
        repeat with e in reverse of doomed
            delete e
        end repeat
    end tell
    return (count of doomed) as text
end run
"""
)

GET_ALARM = (
    _EPOCH_HANDLER
    + _MATCH_HANDLER
    + """
on run argv
    set epoch to my epochDate()
    set found to my matchingEvents(item 1 of argv)
    set {anchorEvent, anchorStart} to my anchorOf(found, (item 2 of argv) as integer, epoch)
    if anchorEvent is missing value then error "event not found"
    tell application "Calendar"
        if (count of display alarms of anchorEvent) is 0 then return "NONE"
        return (trigger interval of (first display alarm of anchorEvent)) as text
    end tell
end run
"""
)

# argv: uid, anchor, minutes ("" clears).
SET_ALARM = (
    _EPOCH_HANDLER
    + _MATCH_HANDLER
    + """
on run argv
    set epoch to my epochDate()
    set found to my matchingEvents(item 1 of argv)
    set {anchorEvent, anchorStart} to my anchorOf(found, (item 2 of argv) as integer, epoch)
    if anchorEvent is missing value then error "event not found"
    set minutesText to item 3 of argv
    tell application "Calendar"
        delete every display alarm of anchorEvent
        if minutesText is not "" then
            make new display alarm at end of display alarms of anchorEvent with properties {trigger interval:(minutesText as integer)}
        end if
    end tell
    return "ok"
end run
"""
)
